"""
Data Management Module using DuckDB
Payslips, contribution lines, employees and the audit log, plus
polars query helpers for history and period summaries
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

import duckdb
import polars as pl

from paie import settings
from paie.exceptions import DuplicatePeriodError, InvalidInputError, PersistenceError
from paie.lifecycle import ensure_editable
from paie.models import ContributionLine, EmployeeRecord, PayslipResult

logger = logging.getLogger(__name__)

PAYSLIP_COLUMNS = [
    'id', 'employee_id', 'company_id', 'period_start', 'period_end', 'payment_date',
    'fiscal_year', 'rule_set_version', 'gross_salary', 'hourly_rate', 'hours_worked',
    'tax_rate_percent', 'total_employee_contributions', 'total_employer_contributions',
    'net_imposable', 'net_before_tax', 'tax_amount', 'net_to_pay', 'employer_cost',
    'paid_leave_acquired', 'paid_leave_taken', 'paid_leave_remaining',
    'cumulative_gross_ytd', 'cumulative_net_ytd',
    'cumulative_employee_contributions_ytd', 'cumulative_employer_contributions_ytd',
    'status', 'locked', 'validated_at', 'created_at', 'updated_at',
]

# Never rewritten by replace()
IMMUTABLE_COLUMNS = ('id', 'employee_id', 'period_start', 'created_at')

CONTRIBUTION_COLUMNS = [
    'code', 'category', 'label', 'base_type', 'base_amount',
    'employee_rate_percent', 'employer_rate_percent',
    'employee_amount', 'employer_amount', 'non_deductible_amount',
]


class DataManager:
    """DuckDB connection holder, schema and read-side helpers"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or settings.DB_PATH)
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        # One connection per manager; DuckDB connections are not thread-safe
        self.lock = Lock()

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        """Open the database on first use (':memory:' for an in-memory database)"""
        if self._conn is None:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = duckdb.connect(self.db_path)
        return self._conn

    def close_connection(self):
        with self.lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def init_schema(self):
        """Initialize database schema with indexes"""
        with self.lock:
            conn = self.get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS employees (
                    employee_id VARCHAR PRIMARY KEY,
                    company_id VARCHAR NOT NULL,
                    first_name VARCHAR,
                    last_name VARCHAR,
                    position VARCHAR,
                    base_salary DECIMAL(14, 2),
                    hourly_rate DECIMAL(12, 4),
                    monthly_hours DECIMAL(8, 2),
                    paid_leave_balance DECIMAL(8, 2),
                    is_executive BOOLEAN DEFAULT FALSE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS payslips (
                    id VARCHAR NOT NULL UNIQUE,
                    employee_id VARCHAR NOT NULL,
                    company_id VARCHAR,
                    period_start DATE NOT NULL,
                    period_end DATE,
                    payment_date DATE,
                    fiscal_year INTEGER,
                    rule_set_version VARCHAR,
                    gross_salary DECIMAL(14, 2),
                    hourly_rate DECIMAL(12, 4),
                    hours_worked DECIMAL(10, 4),
                    tax_rate_percent DECIMAL(7, 4),
                    total_employee_contributions DECIMAL(14, 2),
                    total_employer_contributions DECIMAL(14, 2),
                    net_imposable DECIMAL(14, 2),
                    net_before_tax DECIMAL(14, 2),
                    tax_amount DECIMAL(14, 2),
                    net_to_pay DECIMAL(14, 2),
                    employer_cost DECIMAL(14, 2),
                    paid_leave_acquired DECIMAL(8, 2),
                    paid_leave_taken DECIMAL(8, 2),
                    paid_leave_remaining DECIMAL(8, 2),
                    cumulative_gross_ytd DECIMAL(16, 2),
                    cumulative_net_ytd DECIMAL(16, 2),
                    cumulative_employee_contributions_ytd DECIMAL(16, 2),
                    cumulative_employer_contributions_ytd DECIMAL(16, 2),
                    status VARCHAR,
                    locked BOOLEAN DEFAULT FALSE,
                    validated_at TIMESTAMP,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP,
                    PRIMARY KEY (employee_id, period_start)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS contributions (
                    payslip_id VARCHAR NOT NULL,
                    line_no INTEGER NOT NULL,
                    code VARCHAR,
                    category VARCHAR,
                    label VARCHAR,
                    base_type VARCHAR,
                    base_amount DECIMAL(14, 2),
                    employee_rate_percent DECIMAL(7, 4),
                    employer_rate_percent DECIMAL(7, 4),
                    employee_amount DECIMAL(14, 2),
                    employer_amount DECIMAL(14, 2),
                    non_deductible_amount DECIMAL(14, 2)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_contributions_payslip
                ON contributions(payslip_id)
            """)

            conn.execute("CREATE SEQUENCE IF NOT EXISTS audit_log_seq")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER DEFAULT nextval('audit_log_seq') PRIMARY KEY,
                    logged_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    username VARCHAR,
                    action VARCHAR,
                    company_id VARCHAR,
                    employee_id VARCHAR,
                    period_start DATE,
                    details VARCHAR
                )
            """)

            logger.info(f"Database schema initialized ({self.db_path})")

    def query_pl(self, sql: str, params: Optional[List] = None) -> pl.DataFrame:
        with self.lock:
            try:
                return self.get_connection().execute(sql, params or []).pl()
            except duckdb.Error as e:
                raise PersistenceError(f"Requête impossible: {e}") from e

    def get_employee_history(self, employee_id: str, start: date, end: date) -> pl.DataFrame:
        """Get employee payslips across periods (historical analysis)"""
        return self.query_pl("""
            SELECT period_start, gross_salary, total_employee_contributions,
                   total_employer_contributions, net_imposable, tax_amount, net_to_pay,
                   employer_cost, paid_leave_acquired, paid_leave_taken, paid_leave_remaining,
                   cumulative_gross_ytd, cumulative_net_ytd, rule_set_version
            FROM payslips
            WHERE employee_id = ? AND period_start >= ? AND period_start <= ?
            ORDER BY period_start
        """, [employee_id, start, end])

    def get_period_range(self, company_id: str, start: date, end: date) -> pl.DataFrame:
        """Get all payslips of a company over a period range (cross-period aggregation)"""
        return self.query_pl("""
            SELECT * FROM payslips
            WHERE company_id = ? AND period_start >= ? AND period_start <= ?
            ORDER BY period_start, employee_id
        """, [company_id, start, end])

    def get_company_summary(self, company_id: str, period_start: date) -> Dict:
        """Get aggregated summary for a month"""
        with self.lock:
            try:
                result = self.get_connection().execute("""
                    SELECT
                        COUNT(*) as employee_count,
                        SUM(gross_salary) as total_brut,
                        SUM(net_to_pay) as total_net,
                        SUM(total_employee_contributions) as total_charges_sal,
                        SUM(total_employer_contributions) as total_charges_pat,
                        SUM(employer_cost) as total_cost,
                        SUM(tax_amount) as total_pas
                    FROM payslips
                    WHERE company_id = ? AND period_start = ?
                """, [company_id, period_start]).fetchone()
            except duckdb.Error as e:
                raise PersistenceError(f"Synthèse impossible: {e}") from e

        if result[0] == 0:
            return {}

        return {
            'employee_count': result[0],
            'total_brut': result[1],
            'total_net': result[2],
            'total_charges_sal': result[3],
            'total_charges_pat': result[4],
            'total_cost': result[5],
            'total_pas': result[6],
        }

    def get_available_periods(self, company_id: str) -> List[Dict]:
        """Get list of available months for a company, newest first"""
        df = self.query_pl("""
            SELECT period_start,
                   COUNT(*) as employee_count,
                   MAX(COALESCE(updated_at, created_at)) as last_modified
            FROM payslips
            WHERE company_id = ?
            GROUP BY period_start
            ORDER BY period_start DESC
        """, [company_id])
        return df.to_dicts()


class PayslipRepository:
    """DuckDB payslip store: one row per (employee, month) and its contribution lines"""

    def __init__(self, manager: DataManager, audit_logger: Optional["DataAuditLogger"] = None):
        self.manager = manager
        self.audit_logger = audit_logger

    def exists(self, employee_id: str, period_start: date) -> bool:
        with self.manager.lock:
            try:
                row = self.manager.get_connection().execute(
                    "SELECT 1 FROM payslips WHERE employee_id = ? AND period_start = ?",
                    [employee_id, period_start],
                ).fetchone()
            except duckdb.Error as e:
                raise PersistenceError(f"Lecture impossible: {e}") from e
        return row is not None

    def create(self, payslip: PayslipResult) -> str:
        """Insert a payslip and its lines in one transaction"""
        placeholders = ', '.join('?' for _ in PAYSLIP_COLUMNS)
        with self.manager.lock:
            conn = self.manager.get_connection()
            conn.begin()
            try:
                conn.execute(
                    f"INSERT INTO payslips ({', '.join(PAYSLIP_COLUMNS)}) VALUES ({placeholders})",
                    [getattr(payslip, col) for col in PAYSLIP_COLUMNS],
                )
                self._insert_lines(conn, payslip)
                conn.commit()
            except duckdb.ConstraintException as e:
                conn.rollback()
                raise DuplicatePeriodError(payslip.employee_id, payslip.period_start) from e
            except duckdb.Error as e:
                conn.rollback()
                raise PersistenceError(f"Enregistrement impossible du bulletin {payslip.id}: {e}") from e

        return payslip.id

    def replace(self, payslip: PayslipResult):
        """Overwrite an existing payslip in place, keeping its id"""
        updated = [col for col in PAYSLIP_COLUMNS if col not in IMMUTABLE_COLUMNS]
        assignments = ', '.join(f"{col} = ?" for col in updated)
        with self.manager.lock:
            conn = self.manager.get_connection()
            conn.begin()
            try:
                count = conn.execute(
                    "SELECT COUNT(*) FROM payslips WHERE id = ? AND employee_id = ? AND period_start = ?",
                    [payslip.id, payslip.employee_id, payslip.period_start],
                ).fetchone()[0]
                if count == 0:
                    raise PersistenceError(f"Bulletin introuvable: {payslip.id}")

                conn.execute(
                    f"UPDATE payslips SET {assignments} WHERE id = ?",
                    [getattr(payslip, col) for col in updated] + [payslip.id],
                )
                conn.execute("DELETE FROM contributions WHERE payslip_id = ?", [payslip.id])
                self._insert_lines(conn, payslip)
                conn.commit()
            except PersistenceError:
                conn.rollback()
                raise
            except duckdb.Error as e:
                conn.rollback()
                raise PersistenceError(f"Mise à jour impossible du bulletin {payslip.id}: {e}") from e

    def get(self, payslip_id: str) -> Optional[PayslipResult]:
        payslips = self._select("WHERE id = ?", [payslip_id])
        return payslips[0] if payslips else None

    def delete(self, payslip_id: str, user: str = 'system'):
        existing = self.get(payslip_id)
        if existing is None:
            return
        ensure_editable(existing, 'suppression')

        with self.manager.lock:
            conn = self.manager.get_connection()
            conn.begin()
            try:
                conn.execute("DELETE FROM contributions WHERE payslip_id = ?", [payslip_id])
                conn.execute("DELETE FROM payslips WHERE id = ?", [payslip_id])
                conn.commit()
            except duckdb.Error as e:
                conn.rollback()
                raise PersistenceError(f"Suppression impossible du bulletin {payslip_id}: {e}") from e

        logger.info(f"Deleted payslip {payslip_id} ({existing.employee_id} {existing.period_start:%m-%Y})")
        if self.audit_logger is not None:
            self.audit_logger.log(user, 'delete', existing.company_id, existing.employee_id,
                                  existing.period_start, {'payslip_id': payslip_id})

    def find_by_employee_and_year(self, employee_id: str, fiscal_year: int) -> List[PayslipResult]:
        return self._select("WHERE employee_id = ? AND fiscal_year = ?", [employee_id, fiscal_year])

    @staticmethod
    def _insert_lines(conn: duckdb.DuckDBPyConnection, payslip: PayslipResult):
        if not payslip.contributions:
            return
        columns = ['payslip_id', 'line_no'] + CONTRIBUTION_COLUMNS
        placeholders = ', '.join('?' for _ in columns)
        conn.executemany(
            f"INSERT INTO contributions ({', '.join(columns)}) VALUES ({placeholders})",
            [
                [payslip.id, line_no] + [getattr(line, col) for col in CONTRIBUTION_COLUMNS]
                for line_no, line in enumerate(payslip.contributions)
            ],
        )

    def _select(self, where: str, params: List) -> List[PayslipResult]:
        with self.manager.lock:
            conn = self.manager.get_connection()
            try:
                rows = conn.execute(
                    f"SELECT {', '.join(PAYSLIP_COLUMNS)} FROM payslips {where} ORDER BY period_start",
                    params,
                ).fetchall()
                if not rows:
                    return []

                ids = [row[0] for row in rows]
                id_placeholders = ', '.join('?' for _ in ids)
                line_rows = conn.execute(
                    f"SELECT payslip_id, {', '.join(CONTRIBUTION_COLUMNS)} FROM contributions "
                    f"WHERE payslip_id IN ({id_placeholders}) ORDER BY payslip_id, line_no",
                    ids,
                ).fetchall()
            except duckdb.Error as e:
                raise PersistenceError(f"Lecture impossible: {e}") from e

        lines: Dict[str, List[ContributionLine]] = {}
        for line_row in line_rows:
            lines.setdefault(line_row[0], []).append(
                ContributionLine(**dict(zip(CONTRIBUTION_COLUMNS, line_row[1:])))
            )

        payslips = []
        for row in rows:
            record = dict(zip(PAYSLIP_COLUMNS, row))
            payslips.append(PayslipResult(contributions=tuple(lines.get(record['id'], [])), **record))
        return payslips


class EmployeeRepository:
    """Annuaire des salariés stocké dans DuckDB"""

    COLUMNS = ['employee_id', 'company_id', 'first_name', 'last_name', 'position',
               'base_salary', 'hourly_rate', 'monthly_hours', 'paid_leave_balance', 'is_executive']

    def __init__(self, manager: DataManager):
        self.manager = manager

    def save_employee(self, employee: EmployeeRecord):
        """Insert or update an employee record"""
        placeholders = ', '.join('?' for _ in self.COLUMNS)
        updates = ', '.join(f"{col} = excluded.{col}" for col in self.COLUMNS if col != 'employee_id')
        with self.manager.lock:
            try:
                self.manager.get_connection().execute(
                    f"INSERT INTO employees ({', '.join(self.COLUMNS)}) VALUES ({placeholders}) "
                    f"ON CONFLICT (employee_id) DO UPDATE SET {updates}",
                    [getattr(employee, col) for col in self.COLUMNS],
                )
            except duckdb.Error as e:
                raise PersistenceError(f"Enregistrement impossible du salarié {employee.employee_id}: {e}") from e

    def get_employee(self, employee_id: str) -> EmployeeRecord:
        with self.manager.lock:
            try:
                row = self.manager.get_connection().execute(
                    f"SELECT {', '.join(self.COLUMNS)} FROM employees WHERE employee_id = ?",
                    [employee_id],
                ).fetchone()
            except duckdb.Error as e:
                raise PersistenceError(f"Lecture impossible du salarié {employee_id}: {e}") from e

        if row is None:
            raise InvalidInputError(f"Salarié introuvable: {employee_id}")

        record = dict(zip(self.COLUMNS, row))
        for col in ('base_salary', 'hourly_rate', 'monthly_hours', 'paid_leave_balance'):
            if record[col] is None:
                record[col] = Decimal("0")
        record['is_executive'] = bool(record['is_executive'])
        for col in ('first_name', 'last_name', 'position'):
            record[col] = record[col] or ''
        return EmployeeRecord(**record)

    def update_paid_leave_balance(self, employee_id: str, balance: Decimal):
        with self.manager.lock:
            try:
                self.manager.get_connection().execute(
                    "UPDATE employees SET paid_leave_balance = ? WHERE employee_id = ?",
                    [balance, employee_id],
                )
            except duckdb.Error as e:
                raise PersistenceError(f"Mise à jour du solde de congés impossible pour {employee_id}: {e}") from e
        logger.info(f"Solde de congés de {employee_id} mis à jour: {balance} jours")


class DataAuditLogger:
    """Audit logger for payslip operations"""

    def __init__(self, manager: DataManager):
        self.manager = manager

    def log(self, user: str, action: str, company_id: str, employee_id: str,
            period_start: Optional[date] = None, details: Optional[Dict] = None):
        """Log data operation"""
        details_json = json.dumps(details) if details else None
        with self.manager.lock:
            try:
                self.manager.get_connection().execute("""
                    INSERT INTO audit_log
                    (logged_at, username, action, company_id, employee_id, period_start, details)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, [datetime.now(), user, action, company_id, employee_id, period_start, details_json])
            except duckdb.Error as e:
                raise PersistenceError(f"Journal d'audit indisponible: {e}") from e

    def get_recent_logs(self, limit: int = 100) -> pl.DataFrame:
        """Get recent audit logs"""
        return self.manager.query_pl("""
            SELECT * FROM audit_log
            ORDER BY logged_at DESC, id DESC
            LIMIT ?
        """, [limit])

    def get_employee_logs(self, employee_id: str) -> pl.DataFrame:
        """Get logs for one employee, oldest first"""
        return self.manager.query_pl("""
            SELECT * FROM audit_log
            WHERE employee_id = ?
            ORDER BY id
        """, [employee_id])

"""
Génération séquentielle des bulletins mensuels
==============================================
Runs the payroll engine month by month over a date range for one employee.
Existing months are skipped. The paid-leave balance and the year-to-date
totals are carried forward, and every month ends up as an outcome in the
returned GenerationReport.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from paie import settings
from paie.exceptions import (DuplicatePeriodError, InternalConsistencyError, InvalidInputError,
                             PersistenceError)
from paie.lifecycle import ensure_editable
from paie.models import EmployeeRecord, PayrollContext, PayslipResult
from paie.payroll_calculations import PayrollCalculation, PayrollCalculator
from paie.ports import EmployeeDirectory, PayslipStore
from paie.rules import RuleSetRegistry, default_registry
from paie.shared_utils import ZERO, month_end, month_start, months_between, round_money, to_decimal
from paie.validation import PayslipValidator
from paie.ytd import YTDAggregator

logger = logging.getLogger(__name__)

SALARY_TYPES = ('hourly', 'fixed')


@dataclass
class GenerationRequest:
    """Demande de génération de bulletins sur une plage de dates"""
    employee_id: str
    start_date: date
    end_date: date
    salary_type: str = 'fixed'
    hourly_rate: Optional[Decimal] = None
    hours_worked: Optional[Decimal] = None
    fixed_salary: Optional[Decimal] = None
    include_paid_leave: bool = True
    # Jours de congés pris, par mois (clé: n'importe quel jour du mois)
    paid_leave_taken: Dict[date, Decimal] = field(default_factory=dict)
    tax_rate_percent: Optional[Decimal] = None
    accrual_days_per_month: Optional[Decimal] = None

    def months(self) -> List[date]:
        """Validate the request and list the months it covers"""
        if self.salary_type not in SALARY_TYPES:
            raise InvalidInputError(
                f"Type de salaire invalide: {self.salary_type!r} (attendu: hourly ou fixed)"
            )
        if self.end_date < self.start_date:
            raise InvalidInputError("La date de fin précède la date de début")

        months = months_between(self.start_date, self.end_date)
        if len(months) > settings.MAX_MONTHS_PER_RUN:
            raise InvalidInputError(
                f"Plage trop longue: {len(months)} mois (maximum {settings.MAX_MONTHS_PER_RUN})"
            )
        return months

    def leave_taken_for(self, month: date) -> Decimal:
        taken = ZERO
        for day, days in self.paid_leave_taken.items():
            if month_start(day) == month:
                taken += to_decimal(days, "congés pris")
        if taken < 0:
            raise InvalidInputError(f"Congés pris négatifs en {month:%m-%Y}: {taken}")
        return taken


@dataclass
class MonthOutcome:
    period_start: date
    status: str  # generated, skipped, failed
    payslip_id: Optional[str] = None
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'period_start': self.period_start.isoformat(),
            'status': self.status,
            'payslip_id': self.payslip_id,
            'reason': self.reason,
            'warnings': list(self.warnings),
        }


@dataclass
class GenerationReport:
    """Résultat d'une génération: bulletins créés, ignorés, en échec"""
    employee_id: str
    generated: List[MonthOutcome] = field(default_factory=list)
    skipped: List[MonthOutcome] = field(default_factory=list)
    failed: List[MonthOutcome] = field(default_factory=list)
    cancelled: bool = False
    final_leave_balance: Optional[Decimal] = None
    # Set while the employee's stored balance lags behind the generated payslips
    balance_error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def outcomes(self) -> List[MonthOutcome]:
        return sorted(self.generated + self.skipped + self.failed, key=lambda o: o.period_start)

    def to_dict(self) -> Dict:
        return {
            'employee_id': self.employee_id,
            'generated': [o.to_dict() for o in self.generated],
            'skipped': [o.to_dict() for o in self.skipped],
            'failed': [o.to_dict() for o in self.failed],
            'cancelled': self.cancelled,
            'final_leave_balance': None if self.final_leave_balance is None else str(self.final_leave_balance),
            'balance_error': self.balance_error,
            'timestamp': self.timestamp.isoformat(),
            'generated_count': len(self.generated),
            'skipped_count': len(self.skipped),
            'failed_count': len(self.failed),
        }


@dataclass
class EmployeeLeaveState:
    """Solde de congés payés courant, propriété exclusive du générateur"""
    current_balance: Decimal

    def next_balance(self, acquired: Decimal, taken: Decimal) -> Decimal:
        return self.current_balance + acquired - taken

    def commit(self, new_balance: Decimal):
        self.current_balance = new_balance


class PeriodGenerator:
    """Générateur de bulletins mensuels pour un salarié"""

    def __init__(self, employees: EmployeeDirectory, store: PayslipStore,
                 registry: Optional[RuleSetRegistry] = None,
                 calculator: Optional[PayrollCalculator] = None,
                 audit_logger=None):
        self.employees = employees
        self.store = store
        self.registry = registry or default_registry()
        self.calculator = calculator or PayrollCalculator()
        self.validator = PayslipValidator()
        self.audit_logger = audit_logger

    def generate(self, request: GenerationRequest,
                 cancel_event: Optional[threading.Event] = None,
                 user: str = 'system') -> GenerationReport:
        """
        Générer les bulletins de chaque mois de la plage

        Raises InvalidInputError or InternalConsistencyError before anything is
        written. Store failures only affect their own month.
        """
        months = request.months()
        employee = self.employees.get_employee(request.employee_id)
        tax_rate = self._tax_rate(request.tax_rate_percent)
        accrual = self._accrual(request)

        # Preflight: the pure engine must succeed for every month
        calculations: Dict[date, Tuple[PayrollCalculation, Optional[Decimal], Optional[Decimal]]] = {}
        for month in months:
            try:
                calculations[month] = self._calculate(request, employee, month, tax_rate)
            except InternalConsistencyError as e:
                logger.error(f"Génération annulée pour {employee.employee_id} ({month:%m-%Y}): {e}")
                raise
            request.leave_taken_for(month)

        leave_state = EmployeeLeaveState(to_decimal(employee.paid_leave_balance, "solde de congés"))
        report = GenerationReport(employee_id=employee.employee_id)

        for month in months:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info(f"Génération interrompue pour {employee.employee_id} avant {month:%m-%Y}")
                break

            try:
                already_exists = self.store.exists(employee.employee_id, month)
            except PersistenceError as e:
                logger.warning(f"Lecture impossible pour {employee.employee_id} ({month:%m-%Y}): {e}")
                report.failed.append(MonthOutcome(month, 'failed', reason=str(e)))
                continue

            if already_exists:
                logger.info(f"Bulletin {month:%m-%Y} déjà existant pour {employee.employee_id}, ignoré")
                report.skipped.append(MonthOutcome(month, 'skipped', reason='existing'))
                self._audit(user, 'skip', employee, month)
                continue

            calculation, hourly_rate, hours_worked = calculations[month]
            acquired = accrual if request.include_paid_leave else ZERO
            taken = request.leave_taken_for(month)
            remaining = leave_state.next_balance(acquired, taken)

            try:
                payslip = self._build_payslip(
                    payslip_id=uuid.uuid4().hex,
                    employee=employee,
                    calculation=calculation,
                    hourly_rate=hourly_rate,
                    hours_worked=hours_worked,
                    acquired=acquired,
                    taken=taken,
                    remaining=remaining,
                )
                issues = self._check(payslip)
                payslip_id = self.store.create(payslip)
            except DuplicatePeriodError as e:
                logger.info(f"{e}, ignoré")
                report.skipped.append(MonthOutcome(month, 'skipped', reason='duplicate'))
                continue
            except PersistenceError as e:
                logger.warning(f"Échec d'enregistrement {employee.employee_id} ({month:%m-%Y}): {e}")
                report.failed.append(MonthOutcome(month, 'failed', reason=str(e)))
                continue

            leave_state.commit(remaining)
            outcome = MonthOutcome(month, 'generated', payslip_id=payslip_id, warnings=issues)
            report.generated.append(outcome)
            self._store_balance(employee, remaining, report, outcome)
            self._audit(user, 'generate', employee, month, {'payslip_id': payslip_id})
            logger.info(
                f"Bulletin {month:%m-%Y} généré pour {employee.employee_id}: "
                f"brut {payslip.gross_salary}, net {payslip.net_to_pay}"
            )

        report.final_leave_balance = leave_state.current_balance

        logger.info(
            f"Génération terminée pour {employee.employee_id}: {len(report.generated)} créés, "
            f"{len(report.skipped)} ignorés, {len(report.failed)} en échec"
            + (" (interrompue)" if report.cancelled else "")
        )
        return report

    def regenerate(self, employee_id: str, month: date, salary_type: str = 'fixed',
                   hourly_rate: Optional[Decimal] = None,
                   hours_worked: Optional[Decimal] = None,
                   fixed_salary: Optional[Decimal] = None,
                   include_paid_leave: bool = True,
                   paid_leave_taken: Optional[Decimal] = None,
                   tax_rate_percent: Optional[Decimal] = None,
                   accrual_days_per_month: Optional[Decimal] = None,
                   user: str = 'system') -> PayslipResult:
        """
        Recalculer un bulletin existant et l'écraser (même identifiant)

        The opening leave balance comes from the existing record. Later months
        are left untouched. paid_leave_taken=None keeps the recorded value.
        """
        period_start = month_start(month)
        existing = self._find_existing(employee_id, period_start)
        if existing is None:
            raise InvalidInputError(f"Aucun bulletin à recalculer pour {employee_id} ({period_start:%m-%Y})")
        ensure_editable(existing, 'recalcul')

        taken = existing.paid_leave_taken if paid_leave_taken is None else paid_leave_taken
        request = GenerationRequest(
            employee_id=employee_id,
            start_date=period_start,
            end_date=period_start,
            salary_type=salary_type,
            hourly_rate=hourly_rate,
            hours_worked=hours_worked,
            fixed_salary=fixed_salary,
            include_paid_leave=include_paid_leave,
            paid_leave_taken={period_start: taken},
            tax_rate_percent=tax_rate_percent,
            accrual_days_per_month=accrual_days_per_month,
        )
        request.months()
        employee = self.employees.get_employee(employee_id)
        calculation, rate, hours = self._calculate(
            request, employee, period_start, self._tax_rate(tax_rate_percent)
        )

        acquired = self._accrual(request) if include_paid_leave else ZERO
        taken = request.leave_taken_for(period_start)
        leave_state = EmployeeLeaveState(existing.opening_leave_balance)

        payslip = self._build_payslip(
            payslip_id=existing.id,
            employee=employee,
            calculation=calculation,
            hourly_rate=rate,
            hours_worked=hours,
            acquired=acquired,
            taken=taken,
            remaining=leave_state.next_balance(acquired, taken),
        )
        payslip = replace(payslip, created_at=existing.created_at, updated_at=datetime.now())
        self._check(payslip)
        self.store.replace(payslip)
        self._audit(user, 'regenerate', employee, period_start, {'payslip_id': payslip.id})
        logger.info(f"Bulletin {period_start:%m-%Y} recalculé pour {employee_id}: net {payslip.net_to_pay}")
        return payslip

    def _find_existing(self, employee_id: str, period_start: date) -> Optional[PayslipResult]:
        for payslip in self.store.find_by_employee_and_year(employee_id, period_start.year):
            if payslip.period_start == period_start:
                return payslip
        return None

    @staticmethod
    def _tax_rate(tax_rate_percent) -> Decimal:
        if tax_rate_percent is None:
            return settings.DEFAULT_TAX_RATE_PERCENT
        return to_decimal(tax_rate_percent, "taux de prélèvement")

    @staticmethod
    def _accrual(request: GenerationRequest) -> Decimal:
        if request.accrual_days_per_month is None:
            return settings.PAID_LEAVE_DAYS_PER_MONTH
        accrual = to_decimal(request.accrual_days_per_month, "jours acquis par mois")
        if accrual < 0:
            raise InvalidInputError(f"Acquisition de congés négative: {accrual}")
        return accrual

    @staticmethod
    def _gross_salary(request: GenerationRequest, employee: EmployeeRecord):
        """
        Returns (gross, hourly_rate, hours_worked); the last two are None for a fixed salary

        An hourly request missing its rate or its hours is paid the employee's
        base salary. The recorded rate and hours then default to the employee's.
        """
        if request.salary_type == 'hourly':
            rate = to_decimal(
                request.hourly_rate if request.hourly_rate is not None else employee.hourly_rate,
                "taux horaire",
            )
            hours = to_decimal(
                request.hours_worked if request.hours_worked is not None else employee.monthly_hours,
                "heures travaillées",
            )
            if rate < 0 or hours < 0:
                raise InvalidInputError(f"Taux horaire ou heures négatifs: {rate} x {hours}")
            if request.hourly_rate is None or request.hours_worked is None:
                return round_money(to_decimal(employee.base_salary, "salaire de base")), rate, hours
            return round_money(rate * hours), rate, hours

        salary = request.fixed_salary if request.fixed_salary is not None else employee.base_salary
        return round_money(to_decimal(salary, "salaire fixe")), None, None

    def _calculate(self, request: GenerationRequest, employee: EmployeeRecord,
                   month: date, tax_rate: Decimal):
        gross, rate, hours = self._gross_salary(request, employee)
        rule_set = self.registry.for_period(month).for_employee(employee.is_executive)
        context = PayrollContext(
            gross_salary=gross,
            period_start=month,
            period_end=month_end(month),
            social_security_ceiling=rule_set.social_security_ceiling,
            tax_rate_percent=tax_rate,
        )
        return self.calculator.calculate(context, rule_set), rate, hours

    def _build_payslip(self, payslip_id: str, employee: EmployeeRecord,
                       calculation: PayrollCalculation, hourly_rate, hours_worked,
                       acquired: Decimal, taken: Decimal, remaining: Decimal) -> PayslipResult:
        context = calculation.context
        net = calculation.net
        fiscal_year = context.period_start.year

        priors = self.store.find_by_employee_and_year(employee.employee_id, fiscal_year)
        ytd = YTDAggregator.cumulative_totals(
            fiscal_year, priors, context.period_start,
            gross=net.gross_salary,
            net=net.net_to_pay,
            employee_contributions=net.total_employee_contributions,
            employer_contributions=net.total_employer_contributions,
        )

        return PayslipResult(
            id=payslip_id,
            employee_id=employee.employee_id,
            company_id=employee.company_id,
            period_start=context.period_start,
            period_end=context.period_end,
            payment_date=context.period_end + timedelta(days=settings.PAYMENT_DELAY_DAYS),
            fiscal_year=fiscal_year,
            rule_set_version=calculation.rule_set_version,
            gross_salary=net.gross_salary,
            hourly_rate=hourly_rate,
            hours_worked=hours_worked,
            tax_rate_percent=context.tax_rate_percent,
            total_employee_contributions=net.total_employee_contributions,
            total_employer_contributions=net.total_employer_contributions,
            net_imposable=net.net_imposable,
            net_before_tax=net.net_before_tax,
            tax_amount=net.tax_amount,
            net_to_pay=net.net_to_pay,
            employer_cost=net.employer_cost,
            paid_leave_acquired=acquired,
            paid_leave_taken=taken,
            paid_leave_remaining=remaining,
            cumulative_gross_ytd=ytd.gross,
            cumulative_net_ytd=ytd.net,
            cumulative_employee_contributions_ytd=ytd.employee_contributions,
            cumulative_employer_contributions_ytd=ytd.employer_contributions,
            contributions=calculation.breakdown.lines,
        )

    def _store_balance(self, employee: EmployeeRecord, balance: Decimal,
                       report: GenerationReport, outcome: MonthOutcome):
        """Write the carried balance through the directory once the month is persisted"""
        try:
            self.employees.update_paid_leave_balance(employee.employee_id, balance)
        except PersistenceError as e:
            logger.warning(f"Solde de congés non enregistré pour {employee.employee_id} ({balance}): {e}")
            report.balance_error = str(e)
            outcome.warnings.append(f"Solde de congés non enregistré: {e}")
            return
        report.balance_error = None

    def _check(self, payslip: PayslipResult) -> List[str]:
        rule_set = self.registry.for_period(payslip.period_start)
        is_valid, issues = self.validator.validate_payslip(payslip, rule_set.monthly_minimum_wage)
        if not is_valid:
            for issue in issues:
                logger.warning(f"Anomalie {payslip.employee_id} ({payslip.period_start:%m-%Y}): {issue}")
        return issues

    def _audit(self, user: str, action: str, employee: EmployeeRecord, month: date,
               details: Optional[Dict] = None):
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.log(user, action, employee.company_id, employee.employee_id, month, details)
        except PersistenceError as e:
            logger.warning(f"Audit '{action}' non enregistré pour {employee.employee_id} ({month:%m-%Y}): {e}")

"""
Shared fixtures: rulesets, in-memory collaborators and an in-memory DuckDB database
"""
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

from paie import settings
from paie.data_mgt import DataAuditLogger, DataManager, EmployeeRepository, PayslipRepository
from paie.exceptions import DuplicatePeriodError, InvalidInputError, PersistenceError
from paie.models import EmployeeRecord, PayslipResult
from paie.rules import (BaseType, Category, ContributionDefinition, ContributionRuleSet,
                        RuleSetRegistry)
from paie.shared_utils import month_end


class InMemoryEmployeeDirectory:
    def __init__(self, *employees):
        self.employees = {e.employee_id: e for e in employees}
        self.balance_updates = []

    def get_employee(self, employee_id):
        if employee_id not in self.employees:
            raise InvalidInputError(f"Salarié introuvable: {employee_id}")
        return self.employees[employee_id]

    def update_paid_leave_balance(self, employee_id, balance):
        self.balance_updates.append((employee_id, balance))
        self.employees[employee_id].paid_leave_balance = balance


class UnavailableDirectory(InMemoryEmployeeDirectory):
    """Balance writes fail until `available` is set back to True"""

    def __init__(self, *employees):
        super().__init__(*employees)
        self.available = False

    def update_paid_leave_balance(self, employee_id, balance):
        if not self.available:
            raise PersistenceError("annuaire indisponible")
        super().update_paid_leave_balance(employee_id, balance)


class InMemoryPayslipStore:
    """Dict-backed store; months listed in fail_on raise PersistenceError on create"""

    def __init__(self, fail_on=(), duplicate_on=()):
        self.payslips = {}
        self.fail_on = set(fail_on)
        self.duplicate_on = set(duplicate_on)
        self.create_calls = 0

    def exists(self, employee_id, period_start):
        return (employee_id, period_start) in self.payslips

    def create(self, payslip):
        self.create_calls += 1
        key = (payslip.employee_id, payslip.period_start)
        if payslip.period_start in self.fail_on:
            raise PersistenceError(f"disque plein ({payslip.period_start})")
        if key in self.payslips or payslip.period_start in self.duplicate_on:
            raise DuplicatePeriodError(payslip.employee_id, payslip.period_start)
        self.payslips[key] = payslip
        return payslip.id

    def replace(self, payslip):
        key = (payslip.employee_id, payslip.period_start)
        if key not in self.payslips or self.payslips[key].id != payslip.id:
            raise PersistenceError(f"Bulletin introuvable: {payslip.id}")
        self.payslips[key] = payslip

    def get(self, payslip_id):
        for payslip in self.payslips.values():
            if payslip.id == payslip_id:
                return payslip
        return None

    def delete(self, payslip_id):
        for key, payslip in list(self.payslips.items()):
            if payslip.id == payslip_id:
                del self.payslips[key]

    def find_by_employee_and_year(self, employee_id, fiscal_year):
        return sorted(
            (p for (emp, _), p in self.payslips.items()
             if emp == employee_id and p.fiscal_year == fiscal_year),
            key=lambda p: p.period_start,
        )


class CancellingStore(InMemoryPayslipStore):
    """Sets the cancel event after the first successful write"""

    def __init__(self, cancel_event: threading.Event):
        super().__init__()
        self.cancel_event = cancel_event

    def create(self, payslip):
        payslip_id = super().create(payslip)
        self.cancel_event.set()
        return payslip_id


def make_payslip(period_start, gross, net, acquired='2.5', taken='0', remaining='0'):
    return PayslipResult(
        id=f"p-{period_start}",
        employee_id='E001',
        company_id='ACME',
        period_start=period_start,
        period_end=month_end(period_start),
        payment_date=month_end(period_start) + timedelta(days=5),
        fiscal_year=period_start.year,
        rule_set_version='TEST',
        gross_salary=Decimal(gross),
        hourly_rate=None,
        hours_worked=None,
        tax_rate_percent=Decimal('12'),
        total_employee_contributions=Decimal(gross) - Decimal(net),
        total_employer_contributions=Decimal('100'),
        net_imposable=Decimal(net),
        net_before_tax=Decimal(net),
        tax_amount=Decimal('0'),
        net_to_pay=Decimal(net),
        employer_cost=Decimal(gross) + Decimal('100'),
        paid_leave_acquired=Decimal(acquired),
        paid_leave_taken=Decimal(taken),
        paid_leave_remaining=Decimal(remaining),
        cumulative_gross_ytd=Decimal(gross),
        cumulative_net_ytd=Decimal(net),
        cumulative_employee_contributions_ytd=Decimal('0'),
        cumulative_employer_contributions_ytd=Decimal('0'),
    )


@pytest.fixture
def simple_rule_set():
    """Four-line ruleset of the reference end-to-end scenario"""
    return ContributionRuleSet(
        version='TEST',
        effective_from=date(2020, 1, 1),
        social_security_ceiling=Decimal('3864'),
        minimum_hourly_wage=Decimal('11.65'),
        legal_monthly_hours=Decimal('151.67'),
        definitions=(
            ContributionDefinition('maladie', Category.HEALTH, 'Maladie', BaseType.TOTAL,
                                   Decimal('0'), Decimal('13.0')),
            ContributionDefinition('vieillesse', Category.RETIREMENT_BASE, 'Vieillesse plafonnée',
                                   BaseType.PLAFOND, Decimal('6.9'), Decimal('8.4')),
            ContributionDefinition('chomage', Category.UNEMPLOYMENT, 'Chômage', BaseType.TOTAL,
                                   Decimal('2.4'), Decimal('4.1')),
            ContributionDefinition('csg_crds', Category.CSG_CRDS, 'CSG/CRDS', BaseType.CSG_CRDS_BASE,
                                   Decimal('9.8'), Decimal('0'), non_deductible_rate_percent=Decimal('2.9')),
        ),
    )


@pytest.fixture
def simple_registry(simple_rule_set):
    return RuleSetRegistry([simple_rule_set])


@pytest.fixture(scope='session')
def registry():
    return RuleSetRegistry.from_csv(settings.BASE_DIR / 'config' / 'payroll_rates.csv')


@pytest.fixture
def employee():
    return EmployeeRecord(
        employee_id='E001',
        company_id='ACME',
        base_salary=Decimal('2500.00'),
        hourly_rate=Decimal('16.48'),
        monthly_hours=Decimal('151.67'),
        paid_leave_balance=Decimal('5.0'),
        first_name='Jeanne',
        last_name='MARTIN',
        position='Comptable',
    )


@pytest.fixture
def directory(employee):
    return InMemoryEmployeeDirectory(employee)


@pytest.fixture
def store():
    return InMemoryPayslipStore()


@pytest.fixture
def db():
    manager = DataManager(':memory:')
    manager.init_schema()
    yield manager
    manager.close_connection()


@pytest.fixture
def audit_logger(db):
    return DataAuditLogger(db)


@pytest.fixture
def payslip_repo(db, audit_logger):
    return PayslipRepository(db, audit_logger)


@pytest.fixture
def employee_repo(db, employee):
    repo = EmployeeRepository(db)
    repo.save_employee(employee)
    return repo

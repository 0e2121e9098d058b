"""
Structures de données de la paie
================================
Computed values are frozen dataclasses holding Decimal amounts.
to_dict() renders them for storage and for the document renderer.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from paie.shared_utils import ZERO

STATUS_DRAFT = 'draft'
STATUS_VALIDATED = 'validated'


def _serialize(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class PayrollContext:
    """Entrées d'un calcul de bulletin"""
    gross_salary: Decimal
    period_start: date
    period_end: date
    social_security_ceiling: Decimal
    tax_rate_percent: Decimal


@dataclass(frozen=True)
class ContributionLine:
    """Ligne de cotisation calculée"""
    code: str
    category: str
    label: str
    base_type: str
    base_amount: Decimal
    employee_rate_percent: Decimal
    employer_rate_percent: Decimal
    employee_amount: Decimal
    employer_amount: Decimal
    non_deductible_amount: Decimal = ZERO

    def to_dict(self) -> Dict:
        return {
            'code': self.code,
            'category': self.category,
            'label': self.label,
            'base_type': self.base_type,
            'base_amount': str(self.base_amount),
            'employee_rate_percent': str(self.employee_rate_percent),
            'employer_rate_percent': str(self.employer_rate_percent),
            'employee_amount': str(self.employee_amount),
            'employer_amount': str(self.employer_amount),
            'non_deductible_amount': str(self.non_deductible_amount),
        }


@dataclass(frozen=True)
class ContributionBreakdown:
    """Lines, per-category totals and grand totals"""
    lines: Tuple[ContributionLine, ...]
    category_totals: Dict[str, Dict[str, Decimal]]
    total_employee: Decimal
    total_employer: Decimal
    total_non_deductible: Decimal

    def to_dict(self) -> Dict:
        return {
            'lines': [line.to_dict() for line in self.lines],
            'category_totals': {
                category: {side: str(amount) for side, amount in totals.items()}
                for category, totals in self.category_totals.items()
            },
            'total_employee': str(self.total_employee),
            'total_employer': str(self.total_employer),
            'total_non_deductible': str(self.total_non_deductible),
        }


@dataclass(frozen=True)
class NetSalaryResult:
    gross_salary: Decimal
    total_employee_contributions: Decimal
    total_employer_contributions: Decimal
    csg_crds_non_deductible: Decimal
    net_imposable: Decimal
    net_before_tax: Decimal
    tax_amount: Decimal
    net_to_pay: Decimal
    employer_cost: Decimal


@dataclass(frozen=True)
class YTDTotals:
    """Cumuls annuels"""
    gross: Decimal = ZERO
    net: Decimal = ZERO
    employee_contributions: Decimal = ZERO
    employer_contributions: Decimal = ZERO


@dataclass
class EmployeeRecord:
    """Fiche salarié telle que fournie par l'annuaire"""
    employee_id: str
    company_id: str
    base_salary: Decimal = ZERO
    hourly_rate: Decimal = ZERO
    monthly_hours: Decimal = Decimal("151.67")
    paid_leave_balance: Decimal = ZERO
    is_executive: bool = False
    first_name: str = ''
    last_name: str = ''
    position: str = ''

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class PayslipResult:
    """Bulletin de paie calculé, une instance par salarié et par mois"""
    id: str
    employee_id: str
    company_id: str
    period_start: date
    period_end: date
    payment_date: date
    fiscal_year: int
    rule_set_version: str

    gross_salary: Decimal
    hourly_rate: Optional[Decimal]
    hours_worked: Optional[Decimal]
    tax_rate_percent: Decimal

    total_employee_contributions: Decimal
    total_employer_contributions: Decimal
    net_imposable: Decimal
    net_before_tax: Decimal
    tax_amount: Decimal
    net_to_pay: Decimal
    employer_cost: Decimal

    paid_leave_acquired: Decimal
    paid_leave_taken: Decimal
    paid_leave_remaining: Decimal

    cumulative_gross_ytd: Decimal
    cumulative_net_ytd: Decimal
    cumulative_employee_contributions_ytd: Decimal
    cumulative_employer_contributions_ytd: Decimal

    contributions: Tuple[ContributionLine, ...] = ()
    status: str = STATUS_DRAFT
    locked: bool = False
    validated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    @property
    def is_editable(self) -> bool:
        """Un bulletin validé ou verrouillé ne peut plus être recalculé ni supprimé"""
        return self.status != STATUS_VALIDATED and not self.locked

    @property
    def opening_leave_balance(self) -> Decimal:
        """Solde de congés avant ce mois"""
        return self.paid_leave_remaining - self.paid_leave_acquired + self.paid_leave_taken

    def to_dict(self) -> Dict:
        data = {}
        for name in self.__dataclass_fields__:
            if name == 'contributions':
                continue
            data[name] = _serialize(getattr(self, name))
        data['contributions'] = [line.to_dict() for line in self.contributions]
        return data

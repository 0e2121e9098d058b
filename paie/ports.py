"""
Interfaces des collaborateurs externes (annuaire salariés, stockage des bulletins)
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Protocol

from paie.models import EmployeeRecord, PayslipResult


class EmployeeDirectory(Protocol):
    def get_employee(self, employee_id: str) -> EmployeeRecord: ...

    def update_paid_leave_balance(self, employee_id: str, balance: Decimal) -> None: ...


class PayslipStore(Protocol):
    """
    Raises DuplicatePeriodError from create() on a (employee, month) clash
    and PersistenceError on any other write failure.
    """

    def exists(self, employee_id: str, period_start: date) -> bool: ...

    def create(self, payslip: PayslipResult) -> str: ...

    def replace(self, payslip: PayslipResult) -> None: ...

    def get(self, payslip_id: str) -> Optional[PayslipResult]: ...

    def delete(self, payslip_id: str) -> None: ...

    def find_by_employee_and_year(self, employee_id: str, fiscal_year: int) -> List[PayslipResult]: ...

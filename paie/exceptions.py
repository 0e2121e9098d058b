"""
Erreurs du moteur de paie
=========================
Fatal errors (InvalidInputError, InternalConsistencyError) abort a run.
Per-month errors (DuplicatePeriodError, PersistenceError) are raised by the
store and turned into month outcomes by the generator.
"""


class PayrollError(Exception):
    """Base class for every payroll engine error"""


class InvalidInputError(PayrollError, ValueError):
    """Malformed payroll input, rejected before any computation"""


class InternalConsistencyError(PayrollError):
    """A computed payslip breaks netToPay <= netBeforeTax <= gross <= employerCost"""


class DuplicatePeriodError(PayrollError):
    """A payslip already exists for (employee, month)"""

    def __init__(self, employee_id: str, period_start):
        self.employee_id = employee_id
        self.period_start = period_start
        super().__init__(
            f"Bulletin déjà existant pour {employee_id} ({period_start:%m-%Y})"
        )


class PersistenceError(PayrollError):
    """The store failed to write or read a payslip"""

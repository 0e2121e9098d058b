"""
Validation des entrées et détection d'anomalies
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from paie.exceptions import InvalidInputError
from paie.shared_utils import is_whole_month

logger = logging.getLogger(__name__)


def validate_context(context) -> None:
    """Reject a malformed PayrollContext before any computation"""
    gross = context.gross_salary
    if not isinstance(gross, Decimal) or not gross.is_finite():
        raise InvalidInputError(f"Salaire brut invalide: {gross!r}")
    if gross < 0:
        raise InvalidInputError(f"Salaire brut négatif: {gross}")

    if context.period_end < context.period_start:
        raise InvalidInputError("La date de fin précède la date de début")
    if not is_whole_month(context.period_start, context.period_end):
        raise InvalidInputError(
            f"La période doit couvrir un mois civil complet: "
            f"{context.period_start} - {context.period_end}"
        )

    ceiling = context.social_security_ceiling
    if not isinstance(ceiling, Decimal) or ceiling <= 0:
        raise InvalidInputError(f"Plafond de sécurité sociale invalide: {ceiling!r}")

    tax_rate = context.tax_rate_percent
    if not isinstance(tax_rate, Decimal) or tax_rate < 0 or tax_rate > 100:
        raise InvalidInputError(f"Taux de prélèvement hors limites: {tax_rate!r}")


class PayslipValidator:
    """Validateur et détecteur de cas particuliers"""

    HIGH_SALARY_THRESHOLD = Decimal("100000")
    MIN_EMPLOYEE_RATIO = Decimal("0.10")
    MAX_EMPLOYEE_RATIO = Decimal("0.50")

    @classmethod
    def validate_payslip(cls, payslip, monthly_minimum_wage: Optional[Decimal] = None) -> Tuple[bool, List[str]]:
        """
        Valider un bulletin et détecter les anomalies

        Returns:
            Tuple (is_valid, list_of_issues)
        """
        issues = []
        gross = payslip.gross_salary

        if monthly_minimum_wage is not None and gross < monthly_minimum_wage:
            issues.append(f"Salaire inférieur au SMIC ({gross} < {monthly_minimum_wage})")

        if gross > cls.HIGH_SALARY_THRESHOLD:
            issues.append("Salaire très élevé - vérification recommandée")

        # Cohérence des charges
        if gross > 0:
            ratio = payslip.total_employee_contributions / gross
            if ratio < cls.MIN_EMPLOYEE_RATIO or ratio > cls.MAX_EMPLOYEE_RATIO:
                issues.append(f"Ratio charges salariales anormal: {ratio:.1%}")

        if payslip.paid_leave_remaining < 0:
            issues.append(f"Solde de congés négatif: {payslip.paid_leave_remaining} jours")

        is_valid = len(issues) == 0
        return is_valid, issues

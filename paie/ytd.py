"""
Cumuls annuels et historique mensuel
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import polars as pl

from paie.models import PayslipResult, YTDTotals
from paie.shared_utils import ZERO, month_label

logger = logging.getLogger(__name__)


class YTDAggregator:
    """Folds the prior payslips of a fiscal year into cumulative totals. Stateless."""

    @staticmethod
    def cumulative_totals(fiscal_year: int, prior_payslips: Iterable[PayslipResult],
                          period_start: date, gross: Decimal, net: Decimal,
                          employee_contributions: Decimal = ZERO,
                          employer_contributions: Decimal = ZERO) -> YTDTotals:
        """
        Cumuls de l'exercice jusqu'au mois courant inclus

        Only priors of the same fiscal year strictly before period_start count.
        The current month is added from the given amounts, so a stored copy of
        it among the priors is ignored.
        """
        cumul_gross = gross
        cumul_net = net
        cumul_employee = employee_contributions
        cumul_employer = employer_contributions

        for prior in prior_payslips:
            if prior.fiscal_year != fiscal_year or prior.period_start >= period_start:
                continue
            cumul_gross += prior.gross_salary
            cumul_net += prior.net_to_pay
            cumul_employee += prior.total_employee_contributions
            cumul_employer += prior.total_employer_contributions

        return YTDTotals(
            gross=cumul_gross,
            net=cumul_net,
            employee_contributions=cumul_employee,
            employer_contributions=cumul_employer,
        )

    @staticmethod
    def monthly_summary(payslips: Iterable[PayslipResult], fiscal_year: Optional[int] = None) -> pl.DataFrame:
        """
        Tableau mensuel de l'historique de paie (une ligne par mois)

        Columns: mois (JAN24), brut, net, cotisations, conges_acquis, conges_pris,
        conges_restants. Amounts are rendered as float for display.
        """
        rows = []
        for payslip in sorted(payslips, key=lambda p: p.period_start):
            if fiscal_year is not None and payslip.fiscal_year != fiscal_year:
                continue
            rows.append({
                'periode': payslip.period_start,
                'mois': month_label(payslip.period_start),
                'brut': float(payslip.gross_salary),
                'net': float(payslip.net_to_pay),
                'cotisations': float(payslip.total_employee_contributions),
                'conges_acquis': float(payslip.paid_leave_acquired),
                'conges_pris': float(payslip.paid_leave_taken),
                'conges_restants': float(payslip.paid_leave_remaining),
            })

        schema = {
            'periode': pl.Date,
            'mois': pl.Utf8,
            'brut': pl.Float64,
            'net': pl.Float64,
            'cotisations': pl.Float64,
            'conges_acquis': pl.Float64,
            'conges_pris': pl.Float64,
            'conges_restants': pl.Float64,
        }
        return pl.DataFrame(rows, schema=schema)

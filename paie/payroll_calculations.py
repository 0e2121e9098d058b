"""
Module de calculs de paie France
================================
Assiettes, cotisations salariales et patronales, net imposable, net à payer
et coût employeur. All amounts are Decimal and every stored amount is rounded
half-up to the cent.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from paie.exceptions import InternalConsistencyError, InvalidInputError
from paie.models import (ContributionBreakdown, ContributionLine, NetSalaryResult,
                         PayrollContext)
from paie.rules import BaseType, Category, ContributionRuleSet, check_definition
from paie.shared_utils import ZERO, percent_of, round_money, to_decimal
from paie.validation import validate_context

logger = logging.getLogger(__name__)


class BaseCalculator:
    """Calcul des assiettes de cotisation"""

    # CSG/CRDS: abattement de 1,75% pour frais professionnels
    CSG_CRDS_RATIO = Decimal("0.9825")
    TRANCHE_B_CEILINGS = 8

    @classmethod
    def compute_base(cls, gross_salary, base_type: str, ceiling) -> Decimal:
        """
        Calculer l'assiette d'une cotisation

        Args:
            gross_salary: Salaire brut mensuel (>= 0)
            base_type: total, plafond, trancheA, trancheB ou csgCrdsBase
            ceiling: Plafond mensuel de la sécurité sociale (> 0)

        Returns:
            Assiette arrondie au centime
        """
        gross = to_decimal(gross_salary, "salaire brut")
        ceiling = to_decimal(ceiling, "plafond")
        if gross < 0:
            raise InvalidInputError(f"Salaire brut négatif: {gross}")
        if ceiling <= 0:
            raise InvalidInputError(f"Plafond de sécurité sociale invalide: {ceiling}")

        if base_type == BaseType.TOTAL:
            base = gross
        elif base_type in (BaseType.PLAFOND, BaseType.TRANCHE_A):
            base = min(gross, ceiling)
        elif base_type == BaseType.TRANCHE_B:
            base = max(ZERO, min(gross, cls.TRANCHE_B_CEILINGS * ceiling) - ceiling)
        elif base_type == BaseType.CSG_CRDS_BASE:
            base = gross * cls.CSG_CRDS_RATIO
        else:
            raise InvalidInputError(f"Type d'assiette inconnu: {base_type}")

        return round_money(base)

    @classmethod
    def calculate_base_tranches(cls, gross_salary, ceiling) -> Dict[str, Decimal]:
        """Toutes les assiettes pour un brut donné"""
        return {
            base_type: cls.compute_base(gross_salary, base_type, ceiling)
            for base_type in BaseType.ALL
        }


class ContributionEngine:
    """Applies a ruleset to a gross salary"""

    def __init__(self, base_calculator: Optional[BaseCalculator] = None):
        self.base_calculator = base_calculator or BaseCalculator()

    def compute_contributions(self, gross_salary, rule_set: ContributionRuleSet,
                              ceiling) -> ContributionBreakdown:
        """
        Calculer toutes les cotisations du barème

        One line per definition, in ruleset order, zero-rate lines included.
        A malformed definition fails the whole computation.
        """
        for definition in rule_set.definitions:
            check_definition(definition)

        bases = self.base_calculator.calculate_base_tranches(gross_salary, ceiling)

        lines = []
        category_totals: Dict[str, Dict[str, Decimal]] = {}
        total_employee = ZERO
        total_employer = ZERO
        total_non_deductible = ZERO

        for definition in rule_set.definitions:
            base = bases[definition.base_type]
            line = ContributionLine(
                code=definition.code,
                category=definition.category,
                label=definition.label,
                base_type=definition.base_type,
                base_amount=base,
                employee_rate_percent=definition.employee_rate_percent,
                employer_rate_percent=definition.employer_rate_percent,
                employee_amount=percent_of(base, definition.employee_rate_percent),
                employer_amount=percent_of(base, definition.employer_rate_percent),
                non_deductible_amount=percent_of(base, definition.non_deductible_rate_percent),
            )
            lines.append(line)

            totals = category_totals.setdefault(line.category, {'employee': ZERO, 'employer': ZERO})
            totals['employee'] += line.employee_amount
            totals['employer'] += line.employer_amount

            total_employee += line.employee_amount
            total_employer += line.employer_amount
            total_non_deductible += line.non_deductible_amount

        # Keep categories in their canonical order
        ordered_totals = {c: category_totals[c] for c in Category.ALL if c in category_totals}

        return ContributionBreakdown(
            lines=tuple(lines),
            category_totals=ordered_totals,
            total_employee=total_employee,
            total_employer=total_employer,
            total_non_deductible=total_non_deductible,
        )


class NetSalaryCalculator:
    """Net imposable, net avant impôt, prélèvement à la source, net à payer"""

    @staticmethod
    def compute(gross_salary, breakdown: ContributionBreakdown, tax_rate_percent) -> NetSalaryResult:
        gross = to_decimal(gross_salary, "salaire brut")
        tax_rate = to_decimal(tax_rate_percent, "taux de prélèvement")
        total_employee = breakdown.total_employee
        total_employer = breakdown.total_employer
        non_deductible = breakdown.total_non_deductible

        if not ZERO <= non_deductible <= total_employee:
            raise InternalConsistencyError(
                f"CSG/CRDS non déductible incohérente: {non_deductible} "
                f"(total salarial {total_employee})"
            )

        net_imposable = gross - (total_employee - non_deductible)
        net_before_tax = gross - total_employee
        tax_amount = percent_of(net_imposable, tax_rate)
        net_to_pay = net_before_tax - tax_amount
        employer_cost = gross + total_employer

        if not net_to_pay <= net_before_tax <= gross <= employer_cost:
            raise InternalConsistencyError(
                f"Incohérence: net à payer {net_to_pay}, net avant impôt {net_before_tax}, "
                f"brut {gross}, coût employeur {employer_cost}"
            )

        return NetSalaryResult(
            gross_salary=gross,
            total_employee_contributions=total_employee,
            total_employer_contributions=total_employer,
            csg_crds_non_deductible=non_deductible,
            net_imposable=net_imposable,
            net_before_tax=net_before_tax,
            tax_amount=tax_amount,
            net_to_pay=net_to_pay,
            employer_cost=employer_cost,
        )


@dataclass(frozen=True)
class PayrollCalculation:
    context: PayrollContext
    rule_set_version: str
    breakdown: ContributionBreakdown
    net: NetSalaryResult


class PayrollCalculator:
    """Calculateur principal: un bulletin à partir d'un contexte et d'un barème"""

    def __init__(self, engine: Optional[ContributionEngine] = None):
        self.engine = engine or ContributionEngine()
        self.net_calculator = NetSalaryCalculator()

    def calculate(self, context: PayrollContext, rule_set: ContributionRuleSet) -> PayrollCalculation:
        validate_context(context)

        breakdown = self.engine.compute_contributions(
            context.gross_salary, rule_set, context.social_security_ceiling
        )
        net = self.net_calculator.compute(context.gross_salary, breakdown, context.tax_rate_percent)

        logger.debug(
            f"Calcul {context.period_start:%m-%Y}: brut {net.gross_salary}, "
            f"net à payer {net.net_to_pay}, barème {rule_set.version}"
        )
        return PayrollCalculation(
            context=context,
            rule_set_version=rule_set.version,
            breakdown=breakdown,
            net=net,
        )

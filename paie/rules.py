"""
Barèmes de cotisations versionnés
=================================
Contribution definitions grouped in rulesets keyed by effective date, loaded
from config/payroll_rates.csv. A ruleset is pure data: the engine receives it
per call so historical payslips stay reproducible after rates change.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import polars as pl

from paie import settings
from paie.exceptions import InvalidInputError
from paie.shared_utils import round_money, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal(100)


class Category:
    """Catégories de cotisations"""
    HEALTH = 'health'
    RETIREMENT_BASE = 'retirement_base'
    RETIREMENT_COMPLEMENTARY = 'retirement_complementary'
    UNEMPLOYMENT = 'unemployment'
    CSG_CRDS = 'csg_crds'
    FAMILY = 'family'
    ACCIDENT = 'accident'
    OTHER = 'other'

    ALL = (HEALTH, RETIREMENT_BASE, RETIREMENT_COMPLEMENTARY, UNEMPLOYMENT,
           CSG_CRDS, FAMILY, ACCIDENT, OTHER)


class BaseType:
    """Assiettes de cotisation"""
    TOTAL = 'total'
    PLAFOND = 'plafond'
    TRANCHE_A = 'trancheA'
    TRANCHE_B = 'trancheB'
    CSG_CRDS_BASE = 'csgCrdsBase'

    ALL = (TOTAL, PLAFOND, TRANCHE_A, TRANCHE_B, CSG_CRDS_BASE)


class Scope:
    ALL = 'all'
    EXECUTIVE = 'executive'


def check_definition(definition: "ContributionDefinition"):
    """Raise InvalidInputError if a definition is malformed"""
    code = definition.code
    if definition.category not in Category.ALL:
        raise InvalidInputError(f"Catégorie inconnue pour {code}: {definition.category}")
    if definition.base_type not in BaseType.ALL:
        raise InvalidInputError(f"Assiette inconnue pour {code}: {definition.base_type}")
    if definition.scope not in (Scope.ALL, Scope.EXECUTIVE):
        raise InvalidInputError(f"Périmètre inconnu pour {code}: {definition.scope}")

    for name, rate in (('taux salarial', definition.employee_rate_percent),
                       ('taux patronal', definition.employer_rate_percent)):
        if not isinstance(rate, Decimal) or not rate.is_finite() or rate < 0 or rate > HUNDRED:
            raise InvalidInputError(f"{name} hors limites pour {code}: {rate}")

    non_deductible = definition.non_deductible_rate_percent
    if (not isinstance(non_deductible, Decimal) or non_deductible < 0
            or non_deductible > definition.employee_rate_percent):
        raise InvalidInputError(f"Taux non déductible invalide pour {code}: {non_deductible}")


@dataclass(frozen=True)
class ContributionDefinition:
    """Une ligne de cotisation du barème"""
    code: str
    category: str
    label: str
    base_type: str
    employee_rate_percent: Decimal
    employer_rate_percent: Decimal
    non_deductible_rate_percent: Decimal = Decimal("0")
    scope: str = Scope.ALL

    def __post_init__(self):
        for attr in ('employee_rate_percent', 'employer_rate_percent', 'non_deductible_rate_percent'):
            object.__setattr__(self, attr, to_decimal(getattr(self, attr), f"{self.code}.{attr}"))
        check_definition(self)


@dataclass(frozen=True)
class ContributionRuleSet:
    """Barème complet en vigueur à partir d'une date"""
    version: str
    effective_from: date
    social_security_ceiling: Decimal
    minimum_hourly_wage: Decimal
    legal_monthly_hours: Decimal
    definitions: Tuple[ContributionDefinition, ...]

    def __post_init__(self):
        object.__setattr__(self, 'definitions', tuple(self.definitions))
        if self.social_security_ceiling <= 0:
            raise InvalidInputError(f"PMSS invalide pour {self.version}: {self.social_security_ceiling}")

    @property
    def monthly_minimum_wage(self) -> Decimal:
        """SMIC mensuel brut (SMIC horaire x durée légale)"""
        return round_money(self.minimum_hourly_wage * self.legal_monthly_hours)

    def for_employee(self, is_executive: bool) -> "ContributionRuleSet":
        """Ruleset restricted to the lines that apply to this employee"""
        if is_executive:
            return self
        return replace(self, definitions=tuple(
            d for d in self.definitions if d.scope == Scope.ALL
        ))

    def get(self, code: str) -> Optional[ContributionDefinition]:
        for definition in self.definitions:
            if definition.code == code:
                return definition
        return None


class RuleSetRegistry:
    """Rulesets indexed by effective date"""

    def __init__(self, rulesets: Iterable[ContributionRuleSet]):
        self._rulesets: List[ContributionRuleSet] = sorted(rulesets, key=lambda r: r.effective_from)
        if not self._rulesets:
            raise InvalidInputError("Aucun barème de cotisations chargé")

    @property
    def versions(self) -> List[str]:
        return [r.version for r in self._rulesets]

    def for_period(self, period_start: date) -> ContributionRuleSet:
        """Return the ruleset with the latest effective_from <= period_start"""
        selected = None
        for ruleset in self._rulesets:
            if ruleset.effective_from <= period_start:
                selected = ruleset
            else:
                break

        if selected is None:
            raise InvalidInputError(
                f"Aucun barème en vigueur au {period_start:%d/%m/%Y} "
                f"(premier barème: {self._rulesets[0].effective_from:%d/%m/%Y})"
            )
        return selected

    @classmethod
    def from_csv(cls, csv_path: Optional[Path] = None) -> "RuleSetRegistry":
        """
        Charger les barèmes depuis le fichier CSV de configuration

        Every column is read as a string so rates go straight to Decimal.
        """
        csv_path = Path(csv_path or settings.RATES_CSV)
        if not csv_path.exists():
            raise InvalidInputError(f"Fichier de taux introuvable: {csv_path}")

        df = pl.read_csv(csv_path, infer_schema_length=0)
        return cls.from_dataframe(df)

    @classmethod
    def from_dataframe(cls, df: pl.DataFrame) -> "RuleSetRegistry":
        required = {'version', 'effective_from', 'row_type', 'code', 'category', 'label',
                    'base_type', 'employee_rate', 'employer_rate', 'non_deductible_rate',
                    'scope', 'value'}
        missing = required - set(df.columns)
        if missing:
            raise InvalidInputError(f"Colonnes manquantes dans le fichier de taux: {sorted(missing)}")

        rulesets = []
        for version in df['version'].unique(maintain_order=True).to_list():
            rows = df.filter(pl.col('version') == version).to_dicts()
            rulesets.append(_ruleset_from_rows(version, rows))

        logger.info(f"Loaded {len(rulesets)} contribution rulesets: {[r.version for r in rulesets]}")
        return cls(rulesets)


def _ruleset_from_rows(version: str, rows: List[Dict]) -> ContributionRuleSet:
    constants: Dict[str, Decimal] = {}
    definitions = []
    effective_dates = {row['effective_from'] for row in rows}
    if len(effective_dates) != 1:
        raise InvalidInputError(f"Dates d'effet multiples pour {version}: {sorted(effective_dates)}")

    for row in rows:
        row_type = (row['row_type'] or '').upper()
        if row_type == 'CONSTANT':
            constants[row['code']] = to_decimal(row['value'], f"{version}.{row['code']}")
        elif row_type == 'CHARGE':
            definitions.append(ContributionDefinition(
                code=row['code'],
                category=row['category'],
                label=row['label'],
                base_type=row['base_type'],
                employee_rate_percent=to_decimal(row['employee_rate'] or '0', f"{row['code']}.employee_rate"),
                employer_rate_percent=to_decimal(row['employer_rate'] or '0', f"{row['code']}.employer_rate"),
                non_deductible_rate_percent=to_decimal(row['non_deductible_rate'] or '0',
                                                       f"{row['code']}.non_deductible_rate"),
                scope=row['scope'] or Scope.ALL,
            ))
        else:
            raise InvalidInputError(f"Type de ligne inconnu dans {version}: {row['row_type']}")

    for name in ('PMSS', 'SMIC_HORAIRE', 'DUREE_LEGALE_MENSUELLE'):
        if name not in constants:
            raise InvalidInputError(f"Constante {name} manquante pour {version}")

    try:
        effective_from = date.fromisoformat(effective_dates.pop())
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"Date d'effet invalide pour {version}") from exc

    return ContributionRuleSet(
        version=version,
        effective_from=effective_from,
        social_security_ceiling=constants['PMSS'],
        minimum_hourly_wage=constants['SMIC_HORAIRE'],
        legal_monthly_hours=constants['DUREE_LEGALE_MENSUELLE'],
        definitions=tuple(definitions),
    )


@lru_cache(maxsize=1)
def default_registry() -> RuleSetRegistry:
    """Registry built from settings.RATES_CSV (cached)"""
    return RuleSetRegistry.from_csv(settings.RATES_CSV)

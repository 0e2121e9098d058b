"""
Configuration
=============
Paths and payroll defaults. Every value can be overridden from the environment.
"""

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

DATA_DIR = Path(os.getenv("PAIE_DATA_DIR", "data"))
DB_PATH = Path(os.getenv("PAIE_DB_PATH", str(DATA_DIR / "paie.duckdb")))

RATES_CSV = Path(os.getenv("PAIE_RATES_CSV", str(BASE_DIR / "config" / "payroll_rates.csv")))

# Prélèvement à la source: flat rate, not the real per-employee schedule
DEFAULT_TAX_RATE_PERCENT = Decimal(os.getenv("PAIE_TAX_RATE_PERCENT", "12"))

# 2.5 jours ouvrables par mois, soit 30 jours/an
PAID_LEAVE_DAYS_PER_MONTH = Decimal(os.getenv("PAIE_CONGES_JOURS_PAR_MOIS", "2.5"))

MAX_MONTHS_PER_RUN = 24

# Paiement 5 jours après la fin du mois
PAYMENT_DELAY_DAYS = 5

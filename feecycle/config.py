# feecycle/config.py

import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./feecycle.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Hard stop for month-by-month generation (corrupt dates)
FEE_GENERATION_MAX_MONTHS = int(os.getenv("FEE_GENERATION_MAX_MONTHS", "100"))

# Payment cycles per snapshot row (bare columns + __1..__20)
SNAPSHOT_MAX_PAYMENT_CYCLES = int(os.getenv("SNAPSHOT_MAX_PAYMENT_CYCLES", "21"))

# System identity used as author of batch-mode operations
SYSTEM_ADMIN_USERNAME = os.getenv("SYSTEM_ADMIN_USERNAME", "system")
SYSTEM_ADMIN_EMAIL = os.getenv("SYSTEM_ADMIN_EMAIL", "system@feecycle.local")

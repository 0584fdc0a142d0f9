import os
from datetime import timedelta
from pathlib import Path

import dj_database_url
from celery.schedules import crontab

from .logging_config import get_logging_config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "changeme")
DEBUG = os.getenv("DJANGO_DEBUG", "False") == "True"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost,testserver").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "ledger_core.apps.LedgerCoreConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "books.urls"

# SQLite by default; DATABASE_URL=postgres://... in production
# (select_for_update() row locks only take effect on Postgres)
DATABASES = {
    "default": dj_database_url.config(
        default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
        conn_max_age=int(os.getenv("DB_CONN_MAX_AGE", "0")),
    )
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_I18N = False
USE_TZ = True

LOGGING = get_logging_config(DEBUG)

# Ledger app settings (read through ledger_core.conf.ledger_setting)
LEDGER = {
    "ROUNDING_TOLERANCE": os.getenv("LEDGER_ROUNDING_TOLERANCE", "0.01"),
    "RECURRING_CLAIM_TTL_SECONDS": int(
        os.getenv("LEDGER_RECURRING_CLAIM_TTL_SECONDS", "600")),
    "NUMBER_PADDING": 5,
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", None)
CELERY_TASK_ALWAYS_EAGER = os.getenv("CELERY_TASK_ALWAYS_EAGER", "False") == "True"
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    # One scheduler tick per hour; each schedule fires once per period
    "run-recurring-invoices": {
        "task": "ledger_core.tasks.run_recurring_invoices",
        "schedule": crontab(minute=5),
    },
    "verify-account-balances": {
        "task": "ledger_core.tasks.verify_all_balances",
        "schedule": timedelta(hours=24),
    },
}

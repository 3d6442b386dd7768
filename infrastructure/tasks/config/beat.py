"""Celery beat schedule configuration.

Periodic repair jobs for the purchase ledger and enrollment views; keeping the
structure close to the Celery docs makes adding new entries straightforward.
"""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "purchases-reconcile-enrollments": {
        "task": "purchases.reconcile_enrollments",
        "schedule": crontab(minute="*/15"),
    },
    "purchases-expire-stale-pending": {
        "task": "purchases.expire_stale_pending",
        "schedule": crontab(minute=5),  # hourly
    },
}

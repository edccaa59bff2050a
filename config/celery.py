"""
Celery application for background order processing.

Beat schedule:
    - expire-stale-reservations: releases stock held by unpaid orders
    - daily-order-report: yesterday's order statistics
"""
import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('club_storefront')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

app.conf.beat_schedule = {
    'expire-stale-reservations': {
        'task': 'orders.tasks.expire_stale_reservations',
        'schedule': float(os.environ.get('ORDER_EXPIRY_SWEEP_SECONDS', 60)),
    },
    'daily-order-report': {
        'task': 'orders.tasks.generate_daily_order_report',
        'schedule': crontab(hour=0, minute=15),
    },
}

"""
Management command to expire unpaid orders past their reservation window.

For deployments that drive the sweep from cron instead of Celery beat.

Usage:
    python manage.py expire_reservations
    python manage.py expire_reservations --limit 500
"""
from django.core.management.base import BaseCommand, CommandError

from orders.expiry import sweep_expired_reservations


class Command(BaseCommand):
    help = "Expire payment_pending orders whose reservation window elapsed and restore their stock"

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of orders to handle in this run",
        )

    def handle(self, *args, **options):
        summary = sweep_expired_reservations(limit=options["limit"])

        self.stdout.write(
            f"Expired: {summary['expired']}, "
            f"skipped: {summary['skipped']}, "
            f"failed: {summary['failed']}"
        )
        if summary["failed"]:
            raise CommandError(f"{summary['failed']} order(s) could not be expired", returncode=1)
        self.stdout.write(self.style.SUCCESS("Expiry sweep complete"))

"""
Reservation expiry sweep.

Finds unpaid orders whose reservation window has elapsed and moves each one
to ``expired``, which gives its stock back through the lifecycle. Orders are
processed one at a time in their own transaction; a failure on one order is
logged and the sweep moves on. Re-running the sweep is harmless: expired
orders no longer match the query and restores are gated by
``stock_restored``.
"""
import logging

from django.utils import timezone

from .exceptions import InvalidTransitionError
from .models import Order
from .services import transition_order

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'


def find_expired_reservations(now=None, limit=None):
    """Ids of payment_pending orders past their reservation deadline, oldest first."""
    now = now or timezone.now()
    queryset = Order.objects.filter(
        status=Order.Status.PAYMENT_PENDING,
        stock_restored=False,
        reserved_until__lt=now,
    ).order_by('reserved_until').values_list('pk', flat=True)
    if limit:
        queryset = queryset[:limit]
    return list(queryset)


def sweep_expired_reservations(now=None, limit=None) -> dict:
    """
    Expire every lapsed reservation.

    Args:
        now: Cut-off time (defaults to the current time)
        limit: Optional cap on orders handled in one run

    Returns:
        Dict with counts of 'expired', 'skipped' (moved on concurrently)
        and 'failed' orders.
    """
    summary = {'expired': 0, 'skipped': 0, 'failed': 0}

    for order_id in find_expired_reservations(now=now, limit=limit):
        try:
            transition_order(
                order_id,
                Order.Status.EXPIRED,
                actor=SYSTEM_ACTOR,
                note='Reservation window elapsed',
            )
        except InvalidTransitionError as e:
            # Paid, failed or cancelled between the query and the lock.
            logger.warning(f"Skipping order #{order_id} during expiry sweep: {e}")
            summary['skipped'] += 1
        except Exception:
            logger.exception(f"Failed to expire order #{order_id}")
            summary['failed'] += 1
        else:
            summary['expired'] += 1

    if any(summary.values()):
        logger.info(
            f"Expiry sweep finished: {summary['expired']} expired, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
    return summary

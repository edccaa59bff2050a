"""
Per-buyer purchase limits (``Product.max_per_student``).

This is a soft limit: the history is read before stock is reserved and
nothing locks the two together, so two simultaneous checkouts by the same
buyer can each pass the check and overshoot by one order. Stock safety
never depends on it.
"""
from django.db.models import Sum

from .models import NON_COUNTING_STATUSES, OrderItem


def purchased_quantity(buyer_id, product_id) -> int:
    """Units of ``product_id`` the buyer holds in orders that still count."""
    result = OrderItem.objects.filter(
        order__buyer_id=str(buyer_id),
        product_id=product_id,
    ).exclude(
        order__status__in=list(NON_COUNTING_STATUSES),
    ).aggregate(total=Sum('quantity'))
    return result['total'] or 0

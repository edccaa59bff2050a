"""
Human-readable order numbers: ``<PREFIX>-<YEAR>-<NNNNN>``.

The per-year counter is bumped with a single ``seq = seq + 1`` UPDATE, so
concurrent callers never share a number. Rolled-back transactions can leave
gaps; that is acceptable.
"""
from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .models import OrderCounter

SEQUENCE_WIDTH = 5


def counter_key(year: int) -> str:
    return f"order_sequence_{year}"


def format_order_number(year: int, seq: int, prefix: str = None) -> str:
    prefix = prefix or settings.ORDER_NUMBER_PREFIX
    return f"{prefix}-{year}-{str(seq).zfill(SEQUENCE_WIDTH)}"


def next_order_number(year: int = None) -> str:
    """Increment the counter for ``year`` (default: current year) and format it."""
    if year is None:
        year = timezone.localdate().year
    key = counter_key(year)

    with transaction.atomic():
        OrderCounter.objects.get_or_create(key=key)
        OrderCounter.objects.filter(key=key).update(seq=F('seq') + 1)
        # The UPDATE holds the row until commit, so this reads our own value.
        seq = OrderCounter.objects.values_list('seq', flat=True).get(key=key)

    return format_order_number(year, seq)

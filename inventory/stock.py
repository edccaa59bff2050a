"""
Product stock primitives - the only code path that changes reservable quantities.

Every operation is a conditional UPDATE evaluated by the database:
the availability check and the decrement happen in one statement, so two
checkouts racing for the last unit can never both succeed.

Reserve operations return the updated Product, or None when the condition
failed (insufficient stock, product not active, unknown product or option).
They only raise for caller errors (bad quantity) and storage errors.

Variant operations touch two rows (product total and option stock). Both
updates run in one transaction with the product row updated first, which
serializes every reservation on the same product.
"""
import logging
from typing import Optional

from django.db import transaction
from django.db.models import F, IntegerField, Value
from django.db.models.functions import Greatest
from django.utils import timezone

from .models import Product, VariantOption

logger = logging.getLogger(__name__)


class InvalidQuantityError(ValueError):
    """Raised when a stock operation gets a quantity that is not a positive integer."""


class _ConditionFailed(Exception):
    pass


def _check_quantity(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidQuantityError(f"Quantity must be a positive integer, got {quantity!r}")


def _mark_soldout_if_empty(product_id) -> None:
    # Best effort: total_stock == 0 is what reservations actually check.
    Product.objects.filter(
        pk=product_id,
        total_stock=0,
        status=Product.Status.ACTIVE,
    ).update(status=Product.Status.SOLDOUT, updated_at=timezone.now())


def _reactivate_if_restocked(product_id) -> None:
    # Only soldout heals; paused, archived and draft are explicit admin choices.
    Product.objects.filter(
        pk=product_id,
        total_stock__gt=0,
        status=Product.Status.SOLDOUT,
    ).update(status=Product.Status.ACTIVE, updated_at=timezone.now())


def reserve_stock(product_id, quantity: int) -> Optional[Product]:
    """
    Atomically take ``quantity`` units of a non-variant product.

    Succeeds only if the product is active and holds enough stock.
    """
    _check_quantity(quantity)

    updated = Product.objects.filter(
        pk=product_id,
        has_variants=False,
        status=Product.Status.ACTIVE,
        total_stock__gte=quantity,
    ).update(
        total_stock=F('total_stock') - quantity,
        order_count=F('order_count') + 1,
        updated_at=timezone.now(),
    )
    if not updated:
        logger.warning(f"Reserve failed for product {product_id}: {quantity} unit(s) unavailable")
        return None

    _mark_soldout_if_empty(product_id)
    logger.debug(f"Reserved {quantity} unit(s) of product {product_id}")
    return Product.objects.get(pk=product_id)


def reserve_variant_stock(product_id, option_id, quantity: int) -> Optional[Product]:
    """
    Atomically take ``quantity`` units of one variant option.

    The option must belong to the product, be available and hold enough
    stock; the product total is decremented in the same transaction.
    """
    _check_quantity(quantity)

    try:
        with transaction.atomic():
            updated = Product.objects.filter(
                pk=product_id,
                has_variants=True,
                status=Product.Status.ACTIVE,
                total_stock__gte=quantity,
            ).update(
                total_stock=F('total_stock') - quantity,
                order_count=F('order_count') + 1,
                updated_at=timezone.now(),
            )
            if not updated:
                raise _ConditionFailed

            updated = VariantOption.objects.filter(
                pk=option_id,
                group__product_id=product_id,
                is_available=True,
                stock__gte=quantity,
            ).update(stock=F('stock') - quantity)
            if not updated:
                raise _ConditionFailed
    except _ConditionFailed:
        logger.warning(
            f"Reserve failed for product {product_id} option {option_id}: "
            f"{quantity} unit(s) unavailable"
        )
        return None

    _mark_soldout_if_empty(product_id)
    logger.debug(f"Reserved {quantity} unit(s) of product {product_id} option {option_id}")
    return Product.objects.get(pk=product_id)


def restore_stock(product_id, quantity: int) -> Optional[Product]:
    """
    Give ``quantity`` units back to a non-variant product.

    Reactivates a soldout product once stock is positive again.
    Returns None if the product does not exist or has variants.
    """
    _check_quantity(quantity)

    updated = Product.objects.filter(
        pk=product_id,
        has_variants=False,
    ).update(
        total_stock=F('total_stock') + quantity,
        order_count=Greatest(F('order_count') - 1, Value(0), output_field=IntegerField()),
        updated_at=timezone.now(),
    )
    if not updated:
        logger.error(f"Restore failed for product {product_id}: product missing or has variants")
        return None

    _reactivate_if_restocked(product_id)
    logger.debug(f"Restored {quantity} unit(s) of product {product_id}")
    return Product.objects.get(pk=product_id)


def restore_variant_stock(product_id, option_id, quantity: int) -> Optional[Product]:
    """Mirror of reserve_variant_stock; ignores option availability."""
    _check_quantity(quantity)

    try:
        with transaction.atomic():
            updated = Product.objects.filter(
                pk=product_id,
                has_variants=True,
            ).update(
                total_stock=F('total_stock') + quantity,
                order_count=Greatest(F('order_count') - 1, Value(0), output_field=IntegerField()),
                updated_at=timezone.now(),
            )
            if not updated:
                raise _ConditionFailed

            updated = VariantOption.objects.filter(
                pk=option_id,
                group__product_id=product_id,
            ).update(stock=F('stock') + quantity)
            if not updated:
                raise _ConditionFailed
    except _ConditionFailed:
        logger.error(
            f"Restore failed for product {product_id} option {option_id}: "
            "product or option missing"
        )
        return None

    _reactivate_if_restocked(product_id)
    logger.debug(f"Restored {quantity} unit(s) of product {product_id} option {option_id}")
    return Product.objects.get(pk=product_id)


def recalculate_total(product: Product) -> int:
    """Sum of all option stocks. Pure; does not touch the database row."""
    return sum(option.stock for option in product.iter_options())


def repair_total_stock(product_id) -> Product:
    """
    Rewrite a variant product's ``total_stock`` from its options.

    Administrative repair only, never part of checkout. Re-derives the
    soldout/active status from the repaired total.
    """
    with transaction.atomic():
        product = Product.objects.select_for_update().get(pk=product_id)
        if not product.has_variants:
            return product

        previous = product.total_stock
        product.total_stock = recalculate_total(product)

        if product.total_stock == 0 and product.status == Product.Status.ACTIVE:
            product.status = Product.Status.SOLDOUT
        elif product.total_stock > 0 and product.status == Product.Status.SOLDOUT:
            product.status = Product.Status.ACTIVE
        product.save(update_fields=['total_stock', 'status', 'updated_at'])

    if previous != product.total_stock:
        logger.info(
            f"Repaired total stock for product {product_id}: {previous} -> {product.total_stock}"
        )
    return product

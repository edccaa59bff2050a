"""
Order Service Layer - checkout with stock reservation, and the order lifecycle.

Checkout (place_order) is all-or-nothing across line items:
1. Validate the request; nothing is reserved before validation passes
2. A repeated idempotency key returns the order it already created
3. Reserve stock line by line through the atomic stock primitives
4. If ANY line fails: restore the lines already reserved, report the item
5. Persist the order in payment_pending with a reservation deadline

Lifecycle (transition_order) follows the table in orders.models. Entering
cancelled, payment_failed or expired restores the reserved stock once,
guarded by Order.stock_restored.
"""
import logging
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from functools import partial
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from inventory.models import Product, VariantOption
from inventory.stock import (
    reserve_stock,
    reserve_variant_stock,
    restore_stock,
    restore_variant_stock,
)
from .exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    OrderValidationError,
    ProductNotFoundError,
    PurchaseLimitExceededError,
    StockUnavailableError,
)
from .limits import purchased_quantity
from .models import Order, OrderItem, OrderStatusChange, RESTOCK_STATUSES
from .numbering import next_order_number

logger = logging.getLogger(__name__)

BUYER_CANCELLABLE_STATUSES = frozenset({
    Order.Status.PAYMENT_PENDING,
    Order.Status.CONFIRMED,
})


# =============================================================================
# Checkout
# =============================================================================

def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id', 'quantity' and optional
            'variant_option_id'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item", field='items')

    seen_lines = set()
    for idx, item in enumerate(items):
        if item.get('product_id') is None:
            raise OrderValidationError(f"Item {idx}: missing 'product_id'", field=f'items[{idx}].product_id')

        quantity = item.get('quantity')
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(
                f"Item {idx}: quantity must be a positive integer",
                field=f'items[{idx}].quantity',
            )

        line_key = (item['product_id'], item.get('variant_option_id'))
        if line_key in seen_lines:
            raise OrderValidationError(
                f"Item {idx}: duplicate product {item['product_id']}",
                field=f'items[{idx}]',
            )
        seen_lines.add(line_key)


def build_delivery_fields(delivery: Optional[Dict]) -> Dict:
    """Map a delivery request onto Order fields, validating hostel delivery."""
    delivery = delivery or {}
    delivery_type = delivery.get('type') or Order.DeliveryType.PICKUP
    if delivery_type not in Order.DeliveryType.values:
        raise OrderValidationError(f"Unknown delivery type '{delivery_type}'", field='delivery_type')

    fields = {
        'delivery_type': delivery_type,
        'delivery_hostel': (delivery.get('hostel') or '').strip(),
        'delivery_room_no': (delivery.get('room_no') or '').strip(),
        'pickup_slot': (delivery.get('pickup_slot') or '').strip(),
        'pickup_location': (delivery.get('pickup_location') or '').strip(),
    }
    if delivery_type == Order.DeliveryType.HOSTEL_DELIVERY:
        if not fields['delivery_hostel'] or not fields['delivery_room_no']:
            raise OrderValidationError(
                "Hostel delivery requires a hostel and a room number",
                field='delivery',
            )
    return fields


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise."""
    return int((amount * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _line_name(product, option) -> str:
    if option is not None:
        return f"{product.name} ({option.display_label})"
    return product.name


def _find_by_idempotency_key(idempotency_key: str, buyer_id: str) -> Optional[Order]:
    order = Order.objects.filter(idempotency_key=idempotency_key).first()
    if order is not None and order.buyer_id != buyer_id:
        raise OrderValidationError(
            "Idempotency key already used for another checkout",
            field='idempotency_key',
        )
    return order


def _resolve_lines(items: List[Dict]):
    """Load products and options, check availability rules and price each line."""
    product_ids = {item['product_id'] for item in items}
    products = Product.objects.select_related('store').in_bulk(product_ids)
    missing = product_ids - set(products)
    if missing:
        raise ProductNotFoundError(missing)

    store_ids = {product.store_id for product in products.values()}
    if len(store_ids) > 1:
        raise OrderValidationError("All items must come from the same store", field='items')
    store = next(iter(products.values())).store
    if not store.is_active:
        raise OrderValidationError(f"{store.name} is not accepting orders", field='items')

    option_ids = {item['variant_option_id'] for item in items if item.get('variant_option_id')}
    options = VariantOption.objects.select_related('group').in_bulk(option_ids)

    now = timezone.now()
    lines = []
    for idx, item in enumerate(items):
        product = products[item['product_id']]
        field = f'items[{idx}]'

        if product.status not in (Product.Status.ACTIVE, Product.Status.SOLDOUT):
            raise OrderValidationError(f"{product.name} is not available for purchase", field=field)
        if not product.is_within_sale_window(now):
            raise OrderValidationError(f"{product.name} is not currently on sale", field=field)

        option = None
        option_id = item.get('variant_option_id')
        if product.has_variants:
            if not option_id:
                raise OrderValidationError(f"Choose a variant for {product.name}", field=field)
            option = options.get(option_id)
            if option is None or option.group.product_id != product.pk:
                raise OrderValidationError(
                    f"Variant {option_id} does not belong to {product.name}",
                    field=field,
                )
        elif option_id:
            raise OrderValidationError(f"{product.name} has no variants", field=field)

        quantity = item['quantity']
        unit_price = product.get_effective_price(option)
        lines.append({
            'product': product,
            'option': option,
            'quantity': quantity,
            'unit_price': unit_price,
            'total_price': unit_price * quantity,
        })

    return store, lines


def _enforce_purchase_limits(buyer_id: str, lines: List[Dict]) -> None:
    requested = defaultdict(int)
    products = {}
    for line in lines:
        requested[line['product'].pk] += line['quantity']
        products[line['product'].pk] = line['product']

    for product_id, quantity in requested.items():
        product = products[product_id]
        already = purchased_quantity(buyer_id, product_id)
        if already + quantity > product.max_per_student:
            raise PurchaseLimitExceededError(product.name, product.max_per_student, already, quantity)


def _restore(product_id, option_id, quantity):
    if option_id:
        return restore_variant_stock(product_id, option_id, quantity)
    return restore_stock(product_id, quantity)


def _release_lines(reserved: List[Dict]) -> None:
    for line in reversed(reserved):
        option = line['option']
        _restore(line['product'].pk, option.pk if option else None, line['quantity'])
    if reserved:
        logger.info(f"Rolled back {len(reserved)} reservation(s) from an unfinished checkout")


def _reserve_lines(lines: List[Dict]) -> List[Dict]:
    """Reserve lines in order; on any failure give back what was taken and re-raise."""
    reserved = []
    try:
        for line in lines:
            product, option = line['product'], line['option']
            if option is not None:
                result = reserve_variant_stock(product.pk, option.pk, line['quantity'])
            else:
                result = reserve_stock(product.pk, line['quantity'])

            if result is None:
                raise StockUnavailableError(
                    product.pk,
                    _line_name(product, option),
                    line['quantity'],
                    option_id=option.pk if option else None,
                )
            reserved.append(line)
    except Exception:
        _release_lines(reserved)
        raise
    return reserved


def _persist_order(store, buyer_id, lines, idempotency_key, delivery_fields, buyer_fields, buyer_note) -> Order:
    now = timezone.now()
    total_amount = sum((line['total_price'] for line in lines), Decimal('0.00'))

    with transaction.atomic():
        order = Order.objects.create(
            order_number=next_order_number(),
            store=store,
            buyer_id=buyer_id,
            total_amount=total_amount,
            idempotency_key=idempotency_key,
            status=Order.Status.PAYMENT_PENDING,
            reserved_until=now + timedelta(minutes=settings.ORDER_RESERVATION_MINUTES),
            payment_amount=to_minor_units(total_amount),
            payment_currency=settings.ORDER_CURRENCY,
            buyer_note=buyer_note or '',
            **delivery_fields,
            **buyer_fields,
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                product=line['product'],
                variant_option=line['option'],
                variant_label=line['option'].display_label if line['option'] else '',
                quantity=line['quantity'],
                unit_price=line['unit_price'],
                total_price=line['total_price'],
                snapshot_name=line['product'].name,
                snapshot_image=line['product'].image_url,
            )
            for line in lines
        ])
        OrderStatusChange.objects.create(
            order=order,
            status=Order.Status.PAYMENT_PENDING,
            changed_at=now,
            changed_by=buyer_id,
            note='Order placed',
        )
    return order


def place_order(
    buyer_id,
    items: List[Dict],
    idempotency_key: str,
    delivery: Optional[Dict] = None,
    buyer_snapshot: Optional[Dict] = None,
    buyer_note: str = '',
) -> Tuple[Order, bool]:
    """
    Place an order, reserving stock for every line.

    Args:
        buyer_id: Reference to the buying user
        items: List of dicts with 'product_id', 'quantity', optional 'variant_option_id'
        idempotency_key: Client token for this checkout attempt
        delivery: Optional dict with 'type', 'hostel', 'room_no', 'pickup_slot', 'pickup_location'
        buyer_snapshot: Optional dict with 'name', 'email', 'phone'
        buyer_note: Free text for the store

    Returns:
        Tuple of (Order, created). ``created`` is False when the key was
        already used by this buyer and the original order is returned.

    Raises:
        OrderValidationError: Bad input, unavailable product, purchase limit
        ProductNotFoundError: Unknown product id
        StockUnavailableError: A line could not be reserved; nothing is held
    """
    buyer_id = str(buyer_id or '').strip()
    if not buyer_id:
        raise OrderValidationError("Buyer is required", field='buyer_id')
    idempotency_key = (idempotency_key or '').strip()
    if not idempotency_key:
        raise OrderValidationError("Idempotency key is required", field='idempotency_key')

    validate_order_items(items)
    delivery_fields = build_delivery_fields(delivery)
    buyer_snapshot = buyer_snapshot or {}
    buyer_fields = {
        'buyer_name': buyer_snapshot.get('name') or '',
        'buyer_email': buyer_snapshot.get('email') or '',
        'buyer_phone': buyer_snapshot.get('phone') or '',
    }

    existing = _find_by_idempotency_key(idempotency_key, buyer_id)
    if existing is not None:
        logger.info(f"Checkout retry with key {idempotency_key}: returning order {existing.order_number}")
        return existing, False

    store, lines = _resolve_lines(items)
    _enforce_purchase_limits(buyer_id, lines)
    reserved = _reserve_lines(lines)

    try:
        order = _persist_order(
            store, buyer_id, lines, idempotency_key, delivery_fields, buyer_fields, buyer_note
        )
    except IntegrityError:
        _release_lines(reserved)
        # A concurrent retry with the same key committed first.
        existing = _find_by_idempotency_key(idempotency_key, buyer_id)
        if existing is None:
            raise
        logger.info(f"Checkout with key {idempotency_key} lost the race to order {existing.order_number}")
        return existing, False
    except Exception:
        _release_lines(reserved)
        raise

    logger.info(
        f"Order {order.order_number} placed by {buyer_id} at {store.name}: "
        f"{len(lines)} line(s), total {order.total_amount}, reserved until {order.reserved_until:%H:%M:%S}"
    )
    return order, True


# =============================================================================
# Lifecycle
# =============================================================================

def _lock_order(order_id) -> Order:
    try:
        return Order.objects.select_for_update().get(pk=order_id)
    except Order.DoesNotExist:
        raise OrderNotFoundError(order_id)


def _queue_confirmation(order_id) -> None:
    try:
        from .tasks import send_order_confirmation
        send_order_confirmation.delay(order_id)
        logger.info(f"Triggered confirmation task for order #{order_id}")
    except Exception as e:
        # Don't fail the order if task queuing fails
        logger.error(f"Failed to queue confirmation task: {e}")


def _apply_and_record(order: Order, new_status, actor, note) -> Order:
    """Transition a locked order, write history and run entry side effects."""
    previous = order.status
    entry = order.apply_transition(new_status, actor, note)
    order.save()
    entry.save()

    if new_status in RESTOCK_STATUSES:
        release_order_stock(order)
    if new_status == Order.Status.CONFIRMED:
        transaction.on_commit(partial(_queue_confirmation, order.pk))

    logger.info(f"Order {order.order_number}: {previous} -> {new_status} by {actor or 'system'}")
    return order


def release_order_stock(order: Order) -> bool:
    """
    Give back the stock of every line of ``order``, at most once.

    The ``stock_restored`` flag is claimed with a conditional UPDATE before
    any stock moves, and only for orders in cancelled, payment_failed or
    expired. Returns True if this call performed the restore.
    """
    with transaction.atomic():
        claimed = Order.objects.filter(
            pk=order.pk,
            stock_restored=False,
            status__in=list(RESTOCK_STATUSES),
        ).update(stock_restored=True, updated_at=timezone.now())
        if not claimed:
            logger.info(f"Order {order.order_number}: stock already restored or not restorable")
            return False

        for item in order.items.all():
            result = _restore(item.product_id, item.variant_option_id, item.quantity)
            if result is None:
                logger.error(
                    f"Order {order.order_number}: could not restore {item.quantity} unit(s) "
                    f"of product {item.product_id}; flag for manual audit"
                )

    order.stock_restored = True
    logger.info(f"Order {order.order_number}: reserved stock restored")
    return True


def transition_order(order, new_status, actor=None, note: str = '') -> Order:
    """
    Move an order to ``new_status``.

    Args:
        order: Order instance or primary key
        new_status: Target status
        actor: Reference to whoever made the change (None for the system)
        note: Optional note; becomes the cancel reason for cancellations

    Raises:
        OrderNotFoundError: Unknown order
        InvalidTransitionError: The move is not in the transition table
    """
    order_id = getattr(order, 'pk', order)
    actor = str(actor) if actor is not None else ''
    with transaction.atomic():
        locked = _lock_order(order_id)
        _apply_and_record(locked, new_status, actor, note)
    return locked


def cancel_order(order, actor, reason: str = '') -> Order:
    """Buyer-initiated cancellation, allowed before processing starts."""
    order_id = getattr(order, 'pk', order)
    actor = str(actor)
    with transaction.atomic():
        locked = _lock_order(order_id)
        if locked.status not in BUYER_CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                locked.status, Order.Status.CANCELLED,
                message=(
                    f'Order {locked.order_number} is "{locked.status}" and can no longer be '
                    "cancelled by the buyer; ask the store to cancel it"
                ),
            )
        _apply_and_record(locked, Order.Status.CANCELLED, actor, reason or 'Cancelled by buyer')
    return locked


# =============================================================================
# Payment callbacks (signatures are verified by the caller)
# =============================================================================

def attach_gateway_order(order, gateway_order_id: str) -> Order:
    """Record the gateway order created for an unpaid order."""
    order_id = getattr(order, 'pk', order)
    with transaction.atomic():
        locked = _lock_order(order_id)
        if locked.status != Order.Status.PAYMENT_PENDING:
            raise OrderValidationError(
                f"Order {locked.order_number} is {locked.status}; payment can no longer start",
                field='status',
            )
        locked.payment_gateway_order_id = gateway_order_id
        locked.payment_status = Order.PaymentStatus.CREATED
        locked.save(update_fields=['payment_gateway_order_id', 'payment_status', 'updated_at'])
    return locked


def record_payment_captured(order, gateway_payment_id: str, signature: str = '', method: str = '',
                            actor=None) -> Order:
    """
    Confirm an order whose payment was captured.

    A repeated callback for the same payment is a no-op. A capture for an
    order that already left payment_pending (e.g. expired) raises
    InvalidTransitionError and records nothing; the caller refunds it.
    """
    order_id = getattr(order, 'pk', order)
    actor = str(actor) if actor is not None else ''
    with transaction.atomic():
        locked = _lock_order(order_id)
        if (locked.payment_status == Order.PaymentStatus.CAPTURED
                and locked.payment_gateway_payment_id == gateway_payment_id):
            logger.info(f"Order {locked.order_number}: duplicate capture callback ignored")
            return locked

        locked.payment_gateway_payment_id = gateway_payment_id
        locked.payment_signature = signature or ''
        locked.payment_method = method or ''
        locked.payment_status = Order.PaymentStatus.CAPTURED
        locked.paid_at = timezone.now()
        _apply_and_record(locked, Order.Status.CONFIRMED, actor, 'Payment captured')
    return locked


def record_payment_failed(order, gateway_payment_id: str = '', actor=None, note: str = '') -> Order:
    """Fail an unpaid order and give its stock back."""
    order_id = getattr(order, 'pk', order)
    actor = str(actor) if actor is not None else ''
    with transaction.atomic():
        locked = _lock_order(order_id)
        if locked.status == Order.Status.PAYMENT_FAILED:
            logger.info(f"Order {locked.order_number}: duplicate failure callback ignored")
            return locked

        if gateway_payment_id:
            locked.payment_gateway_payment_id = gateway_payment_id
        locked.payment_status = Order.PaymentStatus.FAILED
        _apply_and_record(locked, Order.Status.PAYMENT_FAILED, actor, note or 'Payment failed')
    return locked


def record_refund(order, refund_id: str, actor=None, note: str = '') -> Order:
    """Mark an order refunded. Stock is not restored."""
    order_id = getattr(order, 'pk', order)
    actor = str(actor) if actor is not None else ''
    with transaction.atomic():
        locked = _lock_order(order_id)
        if locked.status == Order.Status.REFUNDED and locked.refund_id == refund_id:
            logger.info(f"Order {locked.order_number}: duplicate refund callback ignored")
            return locked

        locked.refund_id = refund_id
        locked.refunded_at = timezone.now()
        locked.payment_status = Order.PaymentStatus.REFUNDED
        _apply_and_record(locked, Order.Status.REFUNDED, actor, note or f"Refund {refund_id}")
    return locked

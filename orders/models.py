"""
Order Models - Club storefront orders with a restricted status machine.

Order Status Flow:
    payment_pending -> confirmed | payment_failed | expired | cancelled
    confirmed       -> processing | cancelled | refunded
    processing      -> ready | cancelled | refunded
    ready           -> delivered | cancelled | refunded
    delivered       -> refunded
    cancelled, refunded, payment_failed, expired are terminal.

Stock for every line is reserved when the order is placed and restored
once if the order ends in cancelled, payment_failed or expired.
"""
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from inventory.models import Product, Store, VariantOption
from .exceptions import InvalidTransitionError


class Order(models.Model):
    """
    Buyer order placed at one club storefront.

    Line items are frozen snapshots; the order is a historical record and
    is never deleted. Status only changes through ``apply_transition``.
    """

    class Status(models.TextChoices):
        PAYMENT_PENDING = 'payment_pending', 'Payment pending'
        CONFIRMED = 'confirmed', 'Confirmed'
        PROCESSING = 'processing', 'Processing'
        READY = 'ready', 'Ready'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'
        PAYMENT_FAILED = 'payment_failed', 'Payment failed'
        EXPIRED = 'expired', 'Expired'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        CREATED = 'created', 'Created'
        CAPTURED = 'captured', 'Captured'
        FAILED = 'failed', 'Failed'
        REFUND_INITIATED = 'refund_initiated', 'Refund initiated'
        REFUNDED = 'refunded', 'Refunded'

    class DeliveryType(models.TextChoices):
        PICKUP = 'pickup', 'Pickup'
        HOSTEL_DELIVERY = 'hostel-delivery', 'Hostel delivery'

    order_number = models.CharField(max_length=32, unique=True)
    store = models.ForeignKey(
        Store,
        on_delete=models.PROTECT,
        related_name='orders',
        help_text="Storefront the order was placed at"
    )
    buyer_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Opaque reference to the buying user"
    )
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )
    idempotency_key = models.CharField(
        max_length=100,
        unique=True,
        help_text="Client token identifying one checkout attempt"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PAYMENT_PENDING,
        db_index=True
    )
    reserved_until = models.DateTimeField(
        help_text="Unpaid orders release their stock after this moment"
    )
    stock_restored = models.BooleanField(
        default=False,
        help_text="Set once when the reserved stock is given back"
    )

    # Payment (embedded; signatures are verified before anything is recorded here)
    payment_gateway_order_id = models.CharField(max_length=100, blank=True, default='', db_index=True)
    payment_gateway_payment_id = models.CharField(max_length=100, blank=True, default='')
    payment_signature = models.CharField(max_length=255, blank=True, default='')
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING
    )
    payment_amount = models.PositiveIntegerField(
        default=0,
        help_text="Amount in minor currency units (paise)"
    )
    payment_currency = models.CharField(max_length=3, default='INR')
    payment_method = models.CharField(max_length=30, blank=True, default='')
    paid_at = models.DateTimeField(null=True, blank=True)
    refund_id = models.CharField(max_length=100, blank=True, default='')
    refunded_at = models.DateTimeField(null=True, blank=True)

    # Delivery
    delivery_type = models.CharField(
        max_length=20,
        choices=DeliveryType.choices,
        default=DeliveryType.PICKUP
    )
    delivery_hostel = models.CharField(max_length=50, blank=True, default='')
    delivery_room_no = models.CharField(max_length=20, blank=True, default='')
    pickup_slot = models.CharField(max_length=50, blank=True, default='')
    pickup_location = models.CharField(max_length=100, blank=True, default='')

    # Buyer snapshot
    buyer_name = models.CharField(max_length=150, blank=True, default='')
    buyer_email = models.EmailField(blank=True, default='')
    buyer_phone = models.CharField(max_length=20, blank=True, default='')

    buyer_note = models.CharField(max_length=500, blank=True, default='')
    admin_note = models.CharField(max_length=500, blank=True, default='')

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=150, blank=True, default='')
    cancel_reason = models.CharField(max_length=300, blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'stock_restored', 'reserved_until']),
            models.Index(fields=['buyer_id', 'status']),
            models.Index(fields=['store', 'status', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.status})"

    @property
    def allowed_transitions(self) -> frozenset:
        return VALID_TRANSITIONS.get(self.status, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PaymentStatus.CAPTURED

    @property
    def is_expired(self) -> bool:
        return (
            self.status == self.Status.PAYMENT_PENDING
            and self.reserved_until is not None
            and timezone.now() > self.reserved_until
        )

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items.all())

    def can_transition_to(self, new_status) -> bool:
        return new_status in self.allowed_transitions

    def apply_transition(self, new_status, actor=None, note=''):
        """
        Move to ``new_status`` in memory and return the history entry (unsaved).

        Raises:
            InvalidTransitionError: If the table does not allow the move
        """
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(self.status, new_status, self.allowed_transitions)

        now = timezone.now()
        self.status = new_status
        if new_status == self.Status.CANCELLED:
            self.cancelled_at = now
            self.cancelled_by = actor or ''
            self.cancel_reason = note or ''

        return OrderStatusChange(
            order=self,
            status=new_status,
            changed_at=now,
            changed_by=actor or '',
            note=note or '',
        )


VALID_TRANSITIONS = {
    Order.Status.PAYMENT_PENDING: frozenset({
        Order.Status.CONFIRMED,
        Order.Status.PAYMENT_FAILED,
        Order.Status.EXPIRED,
        Order.Status.CANCELLED,
    }),
    Order.Status.CONFIRMED: frozenset({
        Order.Status.PROCESSING,
        Order.Status.CANCELLED,
        Order.Status.REFUNDED,
    }),
    Order.Status.PROCESSING: frozenset({
        Order.Status.READY,
        Order.Status.CANCELLED,
        Order.Status.REFUNDED,
    }),
    Order.Status.READY: frozenset({
        Order.Status.DELIVERED,
        Order.Status.CANCELLED,
        Order.Status.REFUNDED,
    }),
    Order.Status.DELIVERED: frozenset({Order.Status.REFUNDED}),
    Order.Status.CANCELLED: frozenset(),
    Order.Status.REFUNDED: frozenset(),
    Order.Status.PAYMENT_FAILED: frozenset(),
    Order.Status.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Entering one of these gives the reserved stock back.
RESTOCK_STATUSES = frozenset({
    Order.Status.CANCELLED,
    Order.Status.PAYMENT_FAILED,
    Order.Status.EXPIRED,
})

# Orders in these statuses do not count towards purchase limits.
NON_COUNTING_STATUSES = frozenset({
    Order.Status.CANCELLED,
    Order.Status.PAYMENT_FAILED,
    Order.Status.EXPIRED,
    Order.Status.REFUNDED,
})


class OrderItem(models.Model):
    """
    Line of an order, frozen at purchase time.

    Name, image, variant label and prices are copied from the product so
    later catalogue edits never change the order record.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,  # Products referenced by orders are archived, not deleted
        related_name='order_items'
    )
    variant_option = models.ForeignKey(
        VariantOption,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='order_items'
    )
    variant_label = models.CharField(max_length=100, blank=True, default='')
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    snapshot_name = models.CharField(max_length=150)
    snapshot_image = models.URLField(blank=True, default='')

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']
        indexes = [
            models.Index(fields=['product', 'order']),
        ]

    def __str__(self):
        return f"{self.quantity}x {self.display_name} @ {self.unit_price}"

    @property
    def display_name(self) -> str:
        if self.variant_label:
            return f"{self.snapshot_name} ({self.variant_label})"
        return self.snapshot_name


class OrderStatusChange(models.Model):
    """Append-only audit entry for every status an order enters."""
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='status_history'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    changed_at = models.DateTimeField(default=timezone.now)
    changed_by = models.CharField(max_length=150, blank=True, default='')
    note = models.CharField(max_length=300, blank=True, default='')

    class Meta:
        ordering = ['changed_at', 'id']

    def __str__(self):
        return f"{self.order.order_number} -> {self.status} at {self.changed_at:%Y-%m-%d %H:%M}"


class OrderCounter(models.Model):
    """Per-year sequence backing human-readable order numbers."""
    key = models.CharField(max_length=50, primary_key=True)
    seq = models.PositiveIntegerField(default=0)

    def __str__(self):
        return f"{self.key}={self.seq}"

"""
Inventory Models - Club storefronts and their reservable products.

Models:
    - Store: A club storefront that sells products and receives orders
    - Product: Item for sale, stock either on the product or on its variant options
    - VariantGroup: Ordered option group of a product (e.g. "Size")
    - VariantOption: Individually stocked option inside a group (e.g. "Large")

Stock quantities are never written here directly; see inventory.stock.
"""
from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone


class Store(models.Model):
    """
    Club storefront owning products and orders.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Club or storefront name"
    )
    location = models.CharField(
        max_length=300,
        blank=True,
        default='',
        help_text="Pickup counter or office location"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether the storefront accepts orders"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Store'
        verbose_name_plural = 'Stores'
        ordering = ['name']

    def __str__(self):
        return self.name


class Product(models.Model):
    """
    Product sold by a club storefront.

    When ``has_variants`` is False the stock lives in ``total_stock``.
    When True, ``total_stock`` is a denormalized sum of every option's stock.
    """

    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        ACTIVE = 'active', 'Active'
        PAUSED = 'paused', 'Paused'
        SOLDOUT = 'soldout', 'Sold out'
        ARCHIVED = 'archived', 'Archived'

    class Category(models.TextChoices):
        MERCH = 'merch', 'Merch'
        EVENT_TICKET = 'event-ticket', 'Event ticket'
        FOOD = 'food', 'Food'
        STATIONERY = 'stationery', 'Stationery'
        SERVICE = 'service', 'Service'
        OTHER = 'other', 'Other'

    store = models.ForeignKey(
        Store,
        on_delete=models.PROTECT,
        related_name='products',
        help_text="Owning storefront"
    )
    name = models.CharField(
        max_length=150,
        db_index=True,
        help_text="Product name shown to buyers"
    )
    description = models.TextField(blank=True, default='')
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.OTHER,
        db_index=True
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Base unit price"
    )
    image_url = models.URLField(
        blank=True,
        default='',
        help_text="Primary image, copied into order snapshots"
    )
    has_variants = models.BooleanField(default=False)
    total_stock = models.PositiveIntegerField(
        default=0,
        db_index=True,
        help_text="Reservable quantity (sum of option stock for variant products)"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.DRAFT,
        db_index=True
    )
    sale_starts_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Empty means available as soon as the product is active"
    )
    sale_ends_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Empty means no end date"
    )
    max_per_student = models.PositiveSmallIntegerField(
        default=5,
        validators=[MinValueValidator(1), MaxValueValidator(50)],
        help_text="Maximum cumulative quantity one buyer may hold"
    )
    requires_delivery = models.BooleanField(default=True)
    order_count = models.PositiveIntegerField(
        default=0,
        help_text="Informational count of reservations taken"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['store', 'status']),
            models.Index(fields=['store', 'total_stock']),
            models.Index(fields=['status', 'sale_starts_at', 'sale_ends_at']),
        ]

    def __str__(self):
        return f"{self.name} ({self.store.name})"

    @property
    def is_out_of_stock(self) -> bool:
        return self.total_stock <= 0

    @property
    def is_on_sale(self) -> bool:
        """Active and inside the optional sale window."""
        return self.status == self.Status.ACTIVE and self.is_within_sale_window()

    def is_within_sale_window(self, now=None) -> bool:
        now = now or timezone.now()
        if self.sale_starts_at and now < self.sale_starts_at:
            return False
        if self.sale_ends_at and now > self.sale_ends_at:
            return False
        return True

    def iter_options(self):
        for group in self.variant_groups.all():
            yield from group.options.all()

    def get_effective_price(self, option=None) -> Decimal:
        """Option price override if set, otherwise the product price."""
        if option is not None and option.price is not None:
            return option.price
        return self.price

    def recalculate_total_stock(self) -> int:
        """Recompute ``total_stock`` in memory from the variant options."""
        if self.has_variants:
            self.total_stock = sum(option.stock for option in self.iter_options())
        return self.total_stock


class VariantGroup(models.Model):
    """Named group of options, e.g. "Size" or "Color"."""
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='variant_groups'
    )
    name = models.CharField(max_length=30)
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ['position', 'id']

    def __str__(self):
        return f"{self.product.name} / {self.name}"


class VariantOption(models.Model):
    """
    A stocked option of a variant product.

    Availability is independent of stock: an option can be switched off
    while it still holds units.
    """
    group = models.ForeignKey(
        VariantGroup,
        on_delete=models.CASCADE,
        related_name='options'
    )
    label = models.CharField(max_length=50)
    sku = models.CharField(max_length=64, blank=True, default='')
    stock = models.PositiveIntegerField(default=0)
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Empty means the product price applies"
    )
    is_available = models.BooleanField(default=True)
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ['position', 'id']

    def __str__(self):
        return f"{self.group.name}: {self.label} ({self.stock} left)"

    @property
    def display_label(self) -> str:
        return f"{self.group.name}: {self.label}"

    def save(self, *args, **kwargs):
        if self.sku:
            self.sku = self.sku.strip().upper()
        super().save(*args, **kwargs)

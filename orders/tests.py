"""
Tests for order placement.

Test Cases:
1. Order placed in payment_pending with stock reserved
2. Failed line rolls back every earlier reservation
3. Idempotent retries return the original order
4. Validation happens before any stock is touched
5. Purchase limits count only live orders
6. Order numbers are sequential per year
"""
import re
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone

from inventory.models import Product, Store, VariantOption
from inventory.services import create_product
from orders.exceptions import (
    OrderValidationError,
    ProductNotFoundError,
    PurchaseLimitExceededError,
    StockUnavailableError,
)
from orders.limits import purchased_quantity
from orders.models import Order
from orders.numbering import format_order_number, next_order_number
from orders.services import place_order, transition_order


class OrderFixturesMixin:
    """Shared catalogue: a variant tee and two plain products in one store."""

    def setUp(self):
        self.store = Store.objects.create(name='Photography Society', location='Activity Centre')
        self.tee = create_product(
            self.store, 'Club Tee', Decimal('499.00'),
            status=Product.Status.ACTIVE,
            image_url='https://cdn.example.com/tee.png',
            variants=[{
                'name': 'Size',
                'options': [
                    {'label': 'S', 'stock': 5},
                    {'label': 'M', 'stock': 5, 'price': Decimal('549.00')},
                ],
            }],
        )
        self.small = VariantOption.objects.get(group__product=self.tee, label='S')
        self.medium = VariantOption.objects.get(group__product=self.tee, label='M')
        self.fest_pass = create_product(
            self.store, 'Fest Pass', Decimal('99.00'),
            stock=10, status=Product.Status.ACTIVE
        )
        self.stickers = create_product(
            self.store, 'Sticker Pack', Decimal('49.00'),
            stock=2, status=Product.Status.ACTIVE
        )
        self.key_counter = 0

    def next_key(self):
        self.key_counter += 1
        return f"checkout-{self.key_counter}"

    def place(self, items, buyer='student-1', key=None, **kwargs):
        return place_order(buyer, items, key or self.next_key(), **kwargs)

    def assertStockUnchanged(self):
        for product, total in ((self.tee, 10), (self.fest_pass, 10), (self.stickers, 2)):
            product.refresh_from_db()
            self.assertEqual(product.total_stock, total)
            self.assertEqual(product.order_count, 0)
        self.small.refresh_from_db()
        self.medium.refresh_from_db()
        self.assertEqual((self.small.stock, self.medium.stock), (5, 5))


class PlaceOrderTestCase(OrderFixturesMixin, TestCase):
    """Test cases for checkout."""

    def test_order_placed_with_stock_reserved(self):
        """
        Given: Products with sufficient stock
        When: Placing an order within stock limits
        Then: Order is payment_pending and stock is reserved
        """
        order, created = self.place(
            [
                {'product_id': self.tee.id, 'variant_option_id': self.medium.id, 'quantity': 2},
                {'product_id': self.fest_pass.id, 'quantity': 3},
            ],
            buyer_snapshot={'name': 'Asha', 'email': 'asha@example.com'},
        )

        self.assertTrue(created)
        self.assertEqual(order.status, Order.Status.PAYMENT_PENDING)
        self.assertFalse(order.stock_restored)
        # (2 * 549) + (3 * 99) = 1395
        self.assertEqual(order.total_amount, Decimal('1395.00'))
        self.assertEqual(order.payment_amount, 139500)
        self.assertEqual(order.payment_currency, 'INR')
        self.assertEqual(order.buyer_name, 'Asha')
        self.assertEqual(order.store, self.store)
        self.assertRegex(order.order_number, r'^CLB-\d{4}-\d{5}$')

        remaining = order.reserved_until - timezone.now()
        self.assertTrue(timedelta(minutes=14) < remaining <= timedelta(minutes=15))

        self.assertEqual(order.items.count(), 2)
        history = list(order.status_history.all())
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].status, Order.Status.PAYMENT_PENDING)
        self.assertEqual(history[0].note, 'Order placed')

        self.tee.refresh_from_db()
        self.medium.refresh_from_db()
        self.fest_pass.refresh_from_db()
        self.assertEqual(self.tee.total_stock, 8)
        self.assertEqual(self.medium.stock, 3)
        self.assertEqual(self.fest_pass.total_stock, 7)
        self.assertEqual(self.fest_pass.order_count, 1)

    def test_line_snapshot_is_frozen(self):
        order, _ = self.place([
            {'product_id': self.tee.id, 'variant_option_id': self.medium.id, 'quantity': 1},
        ])

        Product.objects.filter(pk=self.tee.pk).update(name='Renamed Tee', price=Decimal('1.00'))
        VariantOption.objects.filter(pk=self.medium.pk).update(label='Medium', price=Decimal('2.00'))

        item = order.items.get()
        self.assertEqual(item.snapshot_name, 'Club Tee')
        self.assertEqual(item.snapshot_image, 'https://cdn.example.com/tee.png')
        self.assertEqual(item.variant_label, 'Size: M')
        self.assertEqual(item.display_name, 'Club Tee (Size: M)')
        self.assertEqual(item.unit_price, Decimal('549.00'))
        self.assertEqual(item.total_price, Decimal('549.00'))

    def test_failed_line_rolls_back_earlier_reservations(self):
        """
        Given: Sticker Pack has only 2 units
        When: The third line asks for 3 stickers
        Then: Nothing stays reserved and no order exists
        """
        with self.assertRaises(StockUnavailableError) as ctx:
            self.place([
                {'product_id': self.fest_pass.id, 'quantity': 3},
                {'product_id': self.tee.id, 'variant_option_id': self.small.id, 'quantity': 2},
                {'product_id': self.stickers.id, 'quantity': 3},
            ])

        self.assertEqual(ctx.exception.code, 'stock_unavailable')
        self.assertEqual(ctx.exception.product_id, self.stickers.id)
        self.assertIn('Insufficient stock for Sticker Pack', str(ctx.exception))
        self.assertEqual(Order.objects.count(), 0)
        self.assertStockUnchanged()

    def test_failed_variant_line_names_option(self):
        with self.assertRaises(StockUnavailableError) as ctx:
            self.place([{'product_id': self.tee.id, 'variant_option_id': self.small.id, 'quantity': 6}])

        self.assertIn('Club Tee (Size: S)', str(ctx.exception))
        self.assertEqual(ctx.exception.option_id, self.small.id)

    def test_soldout_product_is_stock_unavailable(self):
        self.place([{'product_id': self.stickers.id, 'quantity': 2}])
        self.stickers.refresh_from_db()
        self.assertEqual(self.stickers.status, Product.Status.SOLDOUT)

        with self.assertRaises(StockUnavailableError):
            self.place([{'product_id': self.stickers.id, 'quantity': 1}], buyer='student-2')

    def test_idempotent_retry_returns_existing_order(self):
        items = [{'product_id': self.fest_pass.id, 'quantity': 2}]
        first, created_first = self.place(items, key='same-key')
        second, created_second = self.place(items, key='same-key')

        self.assertTrue(created_first)
        self.assertFalse(created_second)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Order.objects.count(), 1)
        self.fest_pass.refresh_from_db()
        self.assertEqual(self.fest_pass.total_stock, 8)

    def test_idempotency_key_of_other_buyer_rejected(self):
        self.place([{'product_id': self.fest_pass.id, 'quantity': 1}], key='shared-key')

        with self.assertRaises(OrderValidationError) as ctx:
            self.place([{'product_id': self.fest_pass.id, 'quantity': 1}], buyer='student-2', key='shared-key')

        self.assertEqual(ctx.exception.field, 'idempotency_key')

    def test_lost_race_on_idempotency_key_releases_reservation(self):
        items = [{'product_id': self.fest_pass.id, 'quantity': 2}]
        winner, _ = self.place(items, key='race-key')

        # The retry does not see the winner until its own insert collides.
        with patch('orders.services._find_by_idempotency_key', side_effect=[None, winner]):
            order, created = self.place(items, key='race-key')

        self.assertFalse(created)
        self.assertEqual(order.pk, winner.pk)
        self.assertEqual(Order.objects.count(), 1)
        self.fest_pass.refresh_from_db()
        self.assertEqual(self.fest_pass.total_stock, 8)
        self.assertEqual(self.fest_pass.order_count, 1)

    def test_validation_errors_touch_no_stock(self):
        bad_requests = [
            ([], 'items'),
            ([{'product_id': self.fest_pass.id, 'quantity': 0}], 'items[0].quantity'),
            ([{'product_id': self.fest_pass.id, 'quantity': -2}], 'items[0].quantity'),
            ([{'product_id': self.fest_pass.id, 'quantity': '2'}], 'items[0].quantity'),
            ([{'quantity': 1}], 'items[0].product_id'),
            (
                [
                    {'product_id': self.fest_pass.id, 'quantity': 1},
                    {'product_id': self.fest_pass.id, 'quantity': 2},
                ],
                'items[1]',
            ),
        ]
        for items, field in bad_requests:
            with self.subTest(field=field, items=items):
                with self.assertRaises(OrderValidationError) as ctx:
                    self.place(items)
                self.assertEqual(ctx.exception.field, field)

        self.assertStockUnchanged()

    def test_buyer_and_key_required(self):
        items = [{'product_id': self.fest_pass.id, 'quantity': 1}]
        with self.assertRaises(OrderValidationError):
            place_order('', items, 'key-1')
        with self.assertRaises(OrderValidationError):
            place_order('student-1', items, '  ')

    def test_unknown_product(self):
        with self.assertRaises(ProductNotFoundError) as ctx:
            self.place([
                {'product_id': self.fest_pass.id, 'quantity': 1},
                {'product_id': 999999, 'quantity': 1},
            ])

        self.assertEqual(ctx.exception.product_ids, [999999])
        self.assertStockUnchanged()

    def test_variant_rules(self):
        other = create_product(
            self.store, 'Hoodie', Decimal('899.00'), status=Product.Status.ACTIVE,
            variants=[{'name': 'Size', 'options': [{'label': 'L', 'stock': 3}]}],
        )
        other_option = VariantOption.objects.get(group__product=other)

        cases = [
            [{'product_id': self.tee.id, 'quantity': 1}],
            [{'product_id': self.tee.id, 'variant_option_id': other_option.id, 'quantity': 1}],
            [{'product_id': self.fest_pass.id, 'variant_option_id': self.small.id, 'quantity': 1}],
        ]
        for items in cases:
            with self.subTest(items=items):
                with self.assertRaises(OrderValidationError):
                    self.place(items)

        self.assertStockUnchanged()

    def test_unavailable_products_rejected(self):
        for status in (Product.Status.PAUSED, Product.Status.DRAFT, Product.Status.ARCHIVED):
            Product.objects.filter(pk=self.fest_pass.pk).update(status=status)
            with self.subTest(status=status):
                with self.assertRaises(OrderValidationError):
                    self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])

    def test_sale_window_enforced(self):
        Product.objects.filter(pk=self.fest_pass.pk).update(
            sale_starts_at=timezone.now() + timedelta(hours=1)
        )

        with self.assertRaises(OrderValidationError) as ctx:
            self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])
        self.assertIn('not currently on sale', str(ctx.exception))

    def test_items_from_two_stores_rejected(self):
        other_store = Store.objects.create(name='Music Club')
        guitar_picks = create_product(other_store, 'Picks', Decimal('20.00'), stock=5, status=Product.Status.ACTIVE)

        with self.assertRaises(OrderValidationError):
            self.place([
                {'product_id': self.fest_pass.id, 'quantity': 1},
                {'product_id': guitar_picks.id, 'quantity': 1},
            ])

    def test_inactive_store_rejected(self):
        Store.objects.filter(pk=self.store.pk).update(is_active=False)

        with self.assertRaises(OrderValidationError):
            self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])

    def test_hostel_delivery_details(self):
        items = [{'product_id': self.fest_pass.id, 'quantity': 1}]
        with self.assertRaises(OrderValidationError) as ctx:
            self.place(items, delivery={'type': 'hostel-delivery', 'hostel': 'H4'})
        self.assertEqual(ctx.exception.field, 'delivery')

        order, _ = self.place(items, delivery={'type': 'hostel-delivery', 'hostel': 'H4', 'room_no': '212'})
        self.assertEqual(order.delivery_type, Order.DeliveryType.HOSTEL_DELIVERY)
        self.assertEqual((order.delivery_hostel, order.delivery_room_no), ('H4', '212'))

    def test_unknown_delivery_type_rejected(self):
        with self.assertRaises(OrderValidationError):
            self.place([{'product_id': self.fest_pass.id, 'quantity': 1}], delivery={'type': 'drone'})


class PurchaseLimitTestCase(OrderFixturesMixin, TestCase):
    """Per-buyer cumulative limits."""

    def setUp(self):
        super().setUp()
        Product.objects.filter(pk=self.fest_pass.pk).update(max_per_student=2)

    def test_limit_counts_previous_orders(self):
        self.place([{'product_id': self.fest_pass.id, 'quantity': 2}])

        with self.assertRaises(PurchaseLimitExceededError) as ctx:
            self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])

        self.assertEqual(ctx.exception.already_purchased, 2)
        self.assertEqual(ctx.exception.limit, 2)
        self.fest_pass.refresh_from_db()
        self.assertEqual(self.fest_pass.total_stock, 8)

    def test_limit_is_per_buyer(self):
        self.place([{'product_id': self.fest_pass.id, 'quantity': 2}])
        order, created = self.place([{'product_id': self.fest_pass.id, 'quantity': 2}], buyer='student-2')

        self.assertTrue(created)

    def test_single_cart_over_limit(self):
        with self.assertRaises(PurchaseLimitExceededError):
            self.place([{'product_id': self.fest_pass.id, 'quantity': 3}])

    def test_variant_lines_share_product_limit(self):
        Product.objects.filter(pk=self.tee.pk).update(max_per_student=3)

        with self.assertRaises(PurchaseLimitExceededError):
            self.place([
                {'product_id': self.tee.id, 'variant_option_id': self.small.id, 'quantity': 2},
                {'product_id': self.tee.id, 'variant_option_id': self.medium.id, 'quantity': 2},
            ])

    def test_terminal_orders_do_not_count(self):
        first, _ = self.place([{'product_id': self.fest_pass.id, 'quantity': 2}])
        transition_order(first, Order.Status.CANCELLED, actor='student-1')

        order, created = self.place([{'product_id': self.fest_pass.id, 'quantity': 2}])
        self.assertTrue(created)

    def test_purchased_quantity_by_status(self):
        counted, _ = self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])
        expired, _ = self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])
        transition_order(expired, Order.Status.EXPIRED, actor='system')
        self.place([{'product_id': self.fest_pass.id, 'quantity': 1}])

        self.assertEqual(purchased_quantity('student-1', self.fest_pass.id), 2)
        self.assertEqual(purchased_quantity('student-2', self.fest_pass.id), 0)

        transition_order(counted, Order.Status.CONFIRMED)
        transition_order(counted, Order.Status.REFUNDED)
        self.assertEqual(purchased_quantity('student-1', self.fest_pass.id), 1)


class OrderNumberTestCase(TestCase):
    """Test cases for the per-year order sequence."""

    def test_format(self):
        self.assertEqual(format_order_number(2026, 7, prefix='CLB'), 'CLB-2026-00007')
        self.assertEqual(format_order_number(2026, 123456, prefix='CLB'), 'CLB-2026-123456')

    def test_sequence_increments_per_year(self):
        self.assertEqual(next_order_number(2030), 'CLB-2030-00001')
        self.assertEqual(next_order_number(2030), 'CLB-2030-00002')
        self.assertEqual(next_order_number(2031), 'CLB-2031-00001')
        self.assertEqual(next_order_number(2030), 'CLB-2030-00003')

    @override_settings(ORDER_NUMBER_PREFIX='TST')
    def test_prefix_from_settings(self):
        number = next_order_number()
        self.assertTrue(re.match(rf'^TST-{timezone.localdate().year}-\d{{5}}$', number))

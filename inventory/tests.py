"""
Tests for product stock primitives and catalogue services.

Test Cases:
1. Reserve/restore on plain products (counter, soldout, reactivation)
2. Variant reserve/restore keeps option stock and product total in step
3. Invalid quantities are caller errors
4. Total recalculation and administrative repair
5. Admin stock edits re-derive soldout/active
6. Concurrent reservations never oversell
"""
import threading
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase
from django.urls import reverse
from django.utils import timezone

from inventory.models import Product, Store, VariantOption
from inventory.services import create_product, set_option_stock, set_product_stock
from inventory.stock import (
    InvalidQuantityError,
    recalculate_total,
    repair_total_stock,
    reserve_stock,
    reserve_variant_stock,
    restore_stock,
    restore_variant_stock,
)


def make_variant_product(store, name='Club Hoodie', status=Product.Status.ACTIVE):
    return create_product(
        store, name, Decimal('499.00'),
        status=status,
        variants=[{
            'name': 'Size',
            'options': [
                {'label': 'S', 'stock': 2},
                {'label': 'M', 'stock': 5, 'price': Decimal('549.00')},
            ],
        }],
    )


def option(product, label):
    return VariantOption.objects.get(group__product=product, label=label)


class ReserveStockTestCase(TestCase):
    """Plain (non-variant) product reservations."""

    def setUp(self):
        self.store = Store.objects.create(name='Robotics Club', location='Tech Block')
        self.product = create_product(
            self.store, 'Sticker Pack', Decimal('49.00'),
            stock=10, status=Product.Status.ACTIVE
        )

    def test_reserve_decrements_stock_and_counter(self):
        product = reserve_stock(self.product.id, 3)

        self.assertIsNotNone(product)
        self.assertEqual(product.total_stock, 7)
        self.assertEqual(product.order_count, 1)
        self.assertEqual(product.status, Product.Status.ACTIVE)

    def test_reserve_insufficient_stock_returns_none(self):
        result = reserve_stock(self.product.id, 11)

        self.assertIsNone(result)
        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 10)
        self.assertEqual(self.product.order_count, 0)

    def test_reserve_exact_stock_marks_soldout(self):
        product = reserve_stock(self.product.id, 10)

        self.assertEqual(product.total_stock, 0)
        self.assertEqual(product.status, Product.Status.SOLDOUT)
        self.assertIsNone(reserve_stock(self.product.id, 1))

    def test_reserve_requires_active_status(self):
        for status in (Product.Status.PAUSED, Product.Status.DRAFT, Product.Status.ARCHIVED):
            Product.objects.filter(pk=self.product.pk).update(status=status)
            self.assertIsNone(reserve_stock(self.product.id, 1))

        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 10)

    def test_reserve_unknown_product_returns_none(self):
        self.assertIsNone(reserve_stock(999999, 1))

    def test_reserve_stock_rejects_variant_product(self):
        hoodie = make_variant_product(self.store)
        self.assertIsNone(reserve_stock(hoodie.id, 1))

    def test_invalid_quantity_raises(self):
        for quantity in (0, -1, 1.5, True, '2', None):
            with self.assertRaises(InvalidQuantityError):
                reserve_stock(self.product.id, quantity)
            with self.assertRaises(InvalidQuantityError):
                restore_stock(self.product.id, quantity)

        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 10)

    def test_restore_is_inverse_of_reserve(self):
        reserve_stock(self.product.id, 4)
        product = restore_stock(self.product.id, 4)

        self.assertEqual(product.total_stock, 10)
        self.assertEqual(product.order_count, 0)
        self.assertEqual(product.status, Product.Status.ACTIVE)

    def test_restore_reactivates_soldout(self):
        reserve_stock(self.product.id, 10)
        product = restore_stock(self.product.id, 2)

        self.assertEqual(product.total_stock, 2)
        self.assertEqual(product.status, Product.Status.ACTIVE)

    def test_restore_does_not_reactivate_paused(self):
        reserve_stock(self.product.id, 10)
        Product.objects.filter(pk=self.product.pk).update(status=Product.Status.PAUSED)

        product = restore_stock(self.product.id, 10)

        self.assertEqual(product.total_stock, 10)
        self.assertEqual(product.status, Product.Status.PAUSED)

    def test_restore_clamps_order_count_at_zero(self):
        product = restore_stock(self.product.id, 1)

        self.assertEqual(product.order_count, 0)
        self.assertEqual(product.total_stock, 11)

    def test_restore_unknown_product_returns_none(self):
        self.assertIsNone(restore_stock(999999, 1))


class VariantStockTestCase(TestCase):
    """Variant reservations touch option stock and product total together."""

    def setUp(self):
        self.store = Store.objects.create(name='Music Club', location='Auditorium')
        self.product = make_variant_product(self.store)
        self.small = option(self.product, 'S')
        self.medium = option(self.product, 'M')

    def assertStock(self, total, small, medium, order_count=None):
        self.product.refresh_from_db()
        self.small.refresh_from_db()
        self.medium.refresh_from_db()
        self.assertEqual(self.product.total_stock, total)
        self.assertEqual(self.small.stock, small)
        self.assertEqual(self.medium.stock, medium)
        if order_count is not None:
            self.assertEqual(self.product.order_count, order_count)

    def test_create_product_computes_total(self):
        self.assertTrue(self.product.has_variants)
        self.assertStock(7, 2, 5, order_count=0)

    def test_reserve_variant_decrements_option_and_total(self):
        product = reserve_variant_stock(self.product.id, self.medium.id, 3)

        self.assertIsNotNone(product)
        self.assertStock(4, 2, 2, order_count=1)

    def test_reserve_variant_insufficient_option_stock(self):
        # Total (7) covers the request but option S only holds 2.
        self.assertIsNone(reserve_variant_stock(self.product.id, self.small.id, 3))
        self.assertStock(7, 2, 5, order_count=0)

    def test_reserve_unavailable_option_rolls_back_product(self):
        VariantOption.objects.filter(pk=self.medium.pk).update(is_available=False)

        self.assertIsNone(reserve_variant_stock(self.product.id, self.medium.id, 1))
        self.assertStock(7, 2, 5, order_count=0)

    def test_reserve_option_of_other_product(self):
        other = make_variant_product(self.store, name='Club Tee')
        foreign_option = option(other, 'M')

        self.assertIsNone(reserve_variant_stock(self.product.id, foreign_option.id, 1))
        self.assertStock(7, 2, 5, order_count=0)
        foreign_option.refresh_from_db()
        self.assertEqual(foreign_option.stock, 5)

    def test_reserve_variant_on_plain_product(self):
        plain = create_product(self.store, 'Pass', Decimal('99.00'), stock=5, status=Product.Status.ACTIVE)
        self.assertIsNone(reserve_variant_stock(plain.id, self.small.id, 1))

    def test_reserve_all_variants_marks_soldout(self):
        reserve_variant_stock(self.product.id, self.small.id, 2)
        product = reserve_variant_stock(self.product.id, self.medium.id, 5)

        self.assertEqual(product.total_stock, 0)
        self.assertEqual(product.status, Product.Status.SOLDOUT)

    def test_restore_variant_reactivates_soldout(self):
        reserve_variant_stock(self.product.id, self.small.id, 2)
        reserve_variant_stock(self.product.id, self.medium.id, 5)

        product = restore_variant_stock(self.product.id, self.small.id, 2)

        self.assertEqual(product.status, Product.Status.ACTIVE)
        self.assertStock(2, 2, 0, order_count=1)

    def test_restore_variant_ignores_availability(self):
        reserve_variant_stock(self.product.id, self.medium.id, 2)
        VariantOption.objects.filter(pk=self.medium.pk).update(is_available=False)

        self.assertIsNotNone(restore_variant_stock(self.product.id, self.medium.id, 2))
        self.assertStock(7, 2, 5, order_count=0)

    def test_restore_variant_unknown_option(self):
        self.assertIsNone(restore_variant_stock(self.product.id, 999999, 1))
        self.assertStock(7, 2, 5)

    def test_invalid_quantity_raises(self):
        with self.assertRaises(InvalidQuantityError):
            reserve_variant_stock(self.product.id, self.small.id, 0)
        with self.assertRaises(InvalidQuantityError):
            restore_variant_stock(self.product.id, self.small.id, -2)


class RecalculateAndRepairTestCase(TestCase):
    """Administrative recomputation of total_stock."""

    def setUp(self):
        self.store = Store.objects.create(name='Drama Society')
        self.product = make_variant_product(self.store)

    def test_recalculate_total_does_not_write(self):
        Product.objects.filter(pk=self.product.pk).update(total_stock=99)
        self.product.refresh_from_db()

        self.assertEqual(recalculate_total(self.product), 7)
        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 99)

    def test_repair_total_stock_rewrites_and_reactivates(self):
        Product.objects.filter(pk=self.product.pk).update(
            total_stock=0, status=Product.Status.SOLDOUT
        )

        product = repair_total_stock(self.product.id)

        self.assertEqual(product.total_stock, 7)
        self.assertEqual(product.status, Product.Status.ACTIVE)

    def test_repair_marks_soldout_when_options_empty(self):
        VariantOption.objects.filter(group__product=self.product).update(stock=0)

        product = repair_total_stock(self.product.id)

        self.assertEqual(product.total_stock, 0)
        self.assertEqual(product.status, Product.Status.SOLDOUT)

    def test_set_option_stock_recomputes_total(self):
        product = set_option_stock(option(self.product, 'S').id, 10)

        self.assertEqual(product.total_stock, 15)

    def test_set_option_stock_rejects_negative(self):
        with self.assertRaises(ValidationError):
            set_option_stock(option(self.product, 'S').id, -1)

    def test_set_product_stock(self):
        plain = create_product(self.store, 'Pass', Decimal('99.00'), stock=0, status=Product.Status.ACTIVE)
        self.assertEqual(plain.status, Product.Status.SOLDOUT)

        plain = set_product_stock(plain.id, 25)

        self.assertEqual(plain.total_stock, 25)
        self.assertEqual(plain.status, Product.Status.ACTIVE)

    def test_set_product_stock_rejects_variant_product(self):
        with self.assertRaises(ValidationError):
            set_product_stock(self.product.id, 5)

    def test_create_product_rejects_empty_group(self):
        with self.assertRaises(ValidationError):
            create_product(self.store, 'Empty', Decimal('1.00'), variants=[{'name': 'Size', 'options': []}])


class ProductModelTestCase(TestCase):
    """Test cases for Product helpers."""

    def setUp(self):
        self.store = Store.objects.create(name='Coding Club')
        self.product = make_variant_product(self.store)

    def test_effective_price(self):
        self.assertEqual(self.product.get_effective_price(), Decimal('499.00'))
        self.assertEqual(self.product.get_effective_price(option(self.product, 'S')), Decimal('499.00'))
        self.assertEqual(self.product.get_effective_price(option(self.product, 'M')), Decimal('549.00'))

    def test_sale_window(self):
        now = timezone.now()
        self.assertTrue(self.product.is_on_sale)

        self.product.sale_starts_at = now + timedelta(days=1)
        self.assertFalse(self.product.is_on_sale)

        self.product.sale_starts_at = now - timedelta(days=2)
        self.product.sale_ends_at = now - timedelta(days=1)
        self.assertFalse(self.product.is_on_sale)

        self.product.sale_ends_at = None
        self.product.status = Product.Status.PAUSED
        self.assertFalse(self.product.is_on_sale)
        self.assertTrue(self.product.is_within_sale_window())

    def test_option_sku_uppercased(self):
        medium = option(self.product, 'M')
        medium.sku = ' hd-m '
        medium.save()

        medium.refresh_from_db()
        self.assertEqual(medium.sku, 'HD-M')
        self.assertEqual(medium.display_label, 'Size: M')


class ProductAdminStockTestCase(TestCase):
    """Stock edits on the admin change form keep status in step."""

    def setUp(self):
        self.store = Store.objects.create(name='Music Society')
        self.admin_user = get_user_model().objects.create_superuser(
            'storeadmin', 'admin@example.com', 'x'
        )
        self.client.force_login(self.admin_user)

    def post_change_form(self, product, **overrides):
        data = {
            'store': product.store_id,
            'name': product.name,
            'description': product.description,
            'category': product.category,
            'price': str(product.price),
            'image_url': '',
            'total_stock': product.total_stock,
            'status': product.status,
            'sale_starts_at_0': '',
            'sale_starts_at_1': '',
            'sale_ends_at_0': '',
            'sale_ends_at_1': '',
            'max_per_student': product.max_per_student,
            'requires_delivery': 'on',
            'variant_groups-TOTAL_FORMS': '0',
            'variant_groups-INITIAL_FORMS': '0',
            'variant_groups-MIN_NUM_FORMS': '0',
            'variant_groups-MAX_NUM_FORMS': '1000',
        }
        data.update(overrides)
        url = reverse('admin:inventory_product_change', args=[product.pk])
        return self.client.post(url, data)

    def test_restock_reactivates_soldout_product(self):
        """
        Given: A product created with no stock (soldout)
        When: Staff set its stock to 20 on the admin form
        Then: It is active again and can be reserved
        """
        product = create_product(
            self.store, 'Concert Tee', Decimal('350.00'),
            stock=0, status=Product.Status.ACTIVE
        )
        self.assertEqual(product.status, Product.Status.SOLDOUT)

        response = self.post_change_form(product, total_stock=20)

        self.assertEqual(response.status_code, 302)
        product.refresh_from_db()
        self.assertEqual(product.total_stock, 20)
        self.assertEqual(product.status, Product.Status.ACTIVE)
        self.assertIsNotNone(reserve_stock(product.id, 1))

    def test_emptying_stock_marks_soldout(self):
        product = create_product(
            self.store, 'Concert Tee', Decimal('350.00'),
            stock=5, status=Product.Status.ACTIVE
        )

        response = self.post_change_form(product, total_stock=0)

        self.assertEqual(response.status_code, 302)
        product.refresh_from_db()
        self.assertEqual(product.total_stock, 0)
        self.assertEqual(product.status, Product.Status.SOLDOUT)

    def test_restock_leaves_paused_product_paused(self):
        product = create_product(
            self.store, 'Concert Tee', Decimal('350.00'),
            stock=0, status=Product.Status.PAUSED
        )

        self.post_change_form(product, total_stock=8)

        product.refresh_from_db()
        self.assertEqual(product.total_stock, 8)
        self.assertEqual(product.status, Product.Status.PAUSED)


def run_concurrently(target, count):
    """Start ``count`` threads on ``target`` and wait for all of them."""
    threads = [threading.Thread(target=target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class ConcurrentReservationTestCase(TransactionTestCase):
    """
    Concurrent reservations on the same product.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        self.store = Store.objects.create(name='Sports Council')
        self.results = []
        self.db_errors = []
        self.lock = threading.Lock()

    def reserver(self, product_id, quantity, barrier=None):
        def reserve():
            try:
                if barrier is not None:
                    barrier.wait()
                outcome = reserve_stock(product_id, quantity)
            except DatabaseError as e:
                with self.lock:
                    self.db_errors.append(e)
            else:
                with self.lock:
                    self.results.append(outcome)
            finally:
                connection.close()
        return reserve

    def test_concurrent_reservations_no_overselling(self):
        """
        Given: 10 units in stock
        When: Five concurrent reservations of 3 units each
        Then: Exactly three succeed and one unit is left
        """
        product = create_product(
            self.store, 'Fest Pass', Decimal('299.00'),
            stock=10, status=Product.Status.ACTIVE
        )

        run_concurrently(self.reserver(product.id, 3), 5)

        self.assertEqual(self.db_errors, [])
        succeeded = sum(1 for outcome in self.results if outcome is not None)
        product.refresh_from_db()
        taken = 10 - product.total_stock
        self.assertEqual(succeeded, 3)
        self.assertEqual(taken // 3, succeeded)
        self.assertEqual(product.total_stock, 1)
        self.assertEqual(product.order_count, 3)
        self.assertEqual(product.status, Product.Status.ACTIVE)

    def test_last_unit_goes_to_exactly_one_buyer(self):
        """
        Given: A single unit in stock
        When: Two buyers reserve it at the same moment
        Then: One gets it, the other gets None, and the product is soldout
        """
        product = create_product(
            self.store, 'Final Pass', Decimal('299.00'),
            stock=1, status=Product.Status.ACTIVE
        )

        run_concurrently(self.reserver(product.id, 1, barrier=threading.Barrier(2)), 2)

        self.assertEqual(self.db_errors, [])
        self.assertEqual(len(self.results), 2)
        self.assertEqual(sum(1 for outcome in self.results if outcome is not None), 1)
        self.assertEqual(self.results.count(None), 1)
        product.refresh_from_db()
        self.assertEqual(product.total_stock, 0)
        self.assertEqual(product.order_count, 1)
        self.assertEqual(product.status, Product.Status.SOLDOUT)

"""
Tests for the order state machine, stock restores, payments and expiry.
"""
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from inventory.models import Product, Store, VariantOption
from inventory.services import create_product
from orders.exceptions import InvalidTransitionError, OrderNotFoundError, OrderValidationError
from orders.expiry import sweep_expired_reservations
from orders.models import Order, OrderStatusChange, VALID_TRANSITIONS
from orders.services import (
    attach_gateway_order,
    cancel_order,
    place_order,
    record_payment_captured,
    record_payment_failed,
    record_refund,
    release_order_stock,
    transition_order,
)
from orders.tasks import (
    expire_stale_reservations,
    generate_daily_order_report,
    send_order_confirmation,
)


class LifecycleFixturesMixin:

    def setUp(self):
        self.store = Store.objects.create(name='Literary Circle', location='Library Foyer')
        self.book = create_product(
            self.store, 'Anthology', Decimal('250.00'),
            stock=10, status=Product.Status.ACTIVE
        )
        self.tote = create_product(
            self.store, 'Tote Bag', Decimal('199.00'), status=Product.Status.ACTIVE,
            variants=[{'name': 'Colour', 'options': [
                {'label': 'Black', 'stock': 4},
                {'label': 'White', 'stock': 4},
            ]}],
        )
        self.black = VariantOption.objects.get(group__product=self.tote, label='Black')
        self.counter = 0

    def place(self, buyer='reader-1', book=2, black=1):
        self.counter += 1
        order, _ = place_order(buyer, [
            {'product_id': self.book.id, 'quantity': book},
            {'product_id': self.tote.id, 'variant_option_id': self.black.id, 'quantity': black},
        ], f"lifecycle-{self.counter}")
        return order

    def stock(self):
        self.book.refresh_from_db()
        self.tote.refresh_from_db()
        self.black.refresh_from_db()
        return self.book.total_stock, self.tote.total_stock, self.black.stock

    def make_order(self, status):
        """Bare order row in ``status`` without lines."""
        self.counter += 1
        return Order.objects.create(
            order_number=f"TST-2026-{self.counter:05d}",
            store=self.store,
            buyer_id='reader-1',
            idempotency_key=f"bare-{self.counter}",
            status=status,
            reserved_until=timezone.now() + timedelta(minutes=15),
        )


class TransitionTableTestCase(LifecycleFixturesMixin, TestCase):
    """Every (source, target) pair follows the transition table."""

    def test_transition_table(self):
        for source in Order.Status.values:
            for target in Order.Status.values:
                with self.subTest(source=source, target=target):
                    order = self.make_order(source)
                    allowed = target in VALID_TRANSITIONS[source]

                    if allowed:
                        result = transition_order(order, target, actor='admin')
                        self.assertEqual(result.status, target)
                        order.refresh_from_db()
                        self.assertEqual(order.status, target)
                        self.assertEqual(order.status_history.last().status, target)
                    else:
                        with self.assertRaises(InvalidTransitionError) as ctx:
                            transition_order(order, target, actor='admin')
                        self.assertIn(f'"{source}"', str(ctx.exception))
                        self.assertIn(f'"{target}"', str(ctx.exception))
                        order.refresh_from_db()
                        self.assertEqual(order.status, source)
                        self.assertEqual(order.status_history.count(), 0)

    def test_terminal_statuses(self):
        for status in ('cancelled', 'refunded', 'payment_failed', 'expired'):
            self.assertTrue(self.make_order(status).is_terminal)
        self.assertFalse(self.make_order('delivered').is_terminal)

    def test_invalid_transition_carries_statuses(self):
        order = self.make_order(Order.Status.DELIVERED)

        with self.assertRaises(InvalidTransitionError) as ctx:
            transition_order(order, Order.Status.CANCELLED)

        self.assertEqual(ctx.exception.current, 'delivered')
        self.assertEqual(ctx.exception.attempted, 'cancelled')
        self.assertEqual(ctx.exception.allowed, ['refunded'])
        self.assertEqual(ctx.exception.status_code, 409)

    def test_actor_fields_fit_any_username(self):
        username_length = get_user_model()._meta.get_field('username').max_length
        actor = 's' * username_length
        order = self.make_order(Order.Status.CONFIRMED)

        transition_order(order, Order.Status.CANCELLED, actor=actor, note='Stock damaged')

        order.refresh_from_db()
        self.assertEqual(order.cancelled_by, actor)
        self.assertEqual(order.status_history.last().changed_by, actor)
        self.assertGreaterEqual(Order._meta.get_field('cancelled_by').max_length, username_length)
        self.assertGreaterEqual(OrderStatusChange._meta.get_field('changed_by').max_length, username_length)

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFoundError):
            transition_order(999999, Order.Status.CONFIRMED)

    def test_cancellation_metadata(self):
        order = transition_order(self.make_order(Order.Status.CONFIRMED), Order.Status.CANCELLED,
                                 actor='admin', note='Out of print')

        self.assertIsNotNone(order.cancelled_at)
        self.assertEqual(order.cancelled_by, 'admin')
        self.assertEqual(order.cancel_reason, 'Out of print')


class StockRestoreTestCase(LifecycleFixturesMixin, TestCase):
    """Restores happen once, only for cancelled/payment_failed/expired."""

    def test_restocking_statuses_restore_once(self):
        for status in (Order.Status.CANCELLED, Order.Status.PAYMENT_FAILED, Order.Status.EXPIRED):
            with self.subTest(status=status):
                order = self.place()
                self.assertEqual(self.stock(), (8, 7, 3))

                order = transition_order(order, status, actor='system')

                self.assertTrue(order.stock_restored)
                self.assertEqual(self.stock(), (10, 8, 4))
                self.assertFalse(release_order_stock(order))
                self.assertEqual(self.stock(), (10, 8, 4))

    def test_restore_reactivates_soldout_product(self):
        Product.objects.filter(pk=self.book.pk).update(max_per_student=10)
        order = self.place(book=10)
        self.book.refresh_from_db()
        self.assertEqual(self.book.status, Product.Status.SOLDOUT)

        transition_order(order, Order.Status.CANCELLED, actor='reader-1')

        self.book.refresh_from_db()
        self.assertEqual(self.book.status, Product.Status.ACTIVE)
        self.assertEqual(self.book.order_count, 0)

    def test_cancel_after_confirmation_restores(self):
        order = self.place()
        transition_order(order, Order.Status.CONFIRMED)
        transition_order(order, Order.Status.PROCESSING)

        transition_order(order, Order.Status.CANCELLED, actor='admin')

        self.assertEqual(self.stock(), (10, 8, 4))

    def test_refund_after_delivery_keeps_stock_out(self):
        order = self.place()
        for status in ('confirmed', 'processing', 'ready', 'delivered', 'refunded'):
            order = transition_order(order, status, actor='admin')

        self.assertFalse(order.stock_restored)
        self.assertEqual(self.stock(), (8, 7, 3))
        statuses = list(order.status_history.values_list('status', flat=True))
        self.assertEqual(
            statuses,
            ['payment_pending', 'confirmed', 'processing', 'ready', 'delivered', 'refunded']
        )

    def test_release_requires_restocking_status(self):
        order = self.place()

        self.assertFalse(release_order_stock(order))
        self.assertEqual(self.stock(), (8, 7, 3))


class BuyerCancelTestCase(LifecycleFixturesMixin, TestCase):

    def test_buyer_cancels_pending_order(self):
        order = cancel_order(self.place(), actor='reader-1', reason='Changed my mind')

        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.cancel_reason, 'Changed my mind')
        self.assertEqual(self.stock(), (10, 8, 4))

    def test_buyer_cannot_cancel_in_processing(self):
        order = self.place()
        transition_order(order, Order.Status.CONFIRMED)
        transition_order(order, Order.Status.PROCESSING)

        with self.assertRaises(InvalidTransitionError) as ctx:
            cancel_order(order, actor='reader-1')

        self.assertEqual(ctx.exception.current, 'processing')
        self.assertIn('ask the store to cancel it', str(ctx.exception))
        self.assertNotIn('Allowed transitions', str(ctx.exception))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.PROCESSING)

        staff_cancelled = transition_order(order, Order.Status.CANCELLED, actor='admin')
        self.assertEqual(staff_cancelled.status, Order.Status.CANCELLED)


class PaymentRecordingTestCase(LifecycleFixturesMixin, TestCase):
    """Gateway callbacks recorded after signature verification."""

    def test_capture_confirms_order(self):
        order = attach_gateway_order(self.place(), 'order_GW1')
        self.assertEqual(order.payment_status, Order.PaymentStatus.CREATED)

        order = record_payment_captured(order, 'pay_1', signature='sig', method='upi')

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertTrue(order.is_paid)
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(order.payment_gateway_order_id, 'order_GW1')
        self.assertEqual(order.payment_method, 'upi')

    def test_duplicate_capture_is_noop(self):
        order = record_payment_captured(self.place(), 'pay_1')
        history_before = order.status_history.count()

        again = record_payment_captured(order, 'pay_1')

        self.assertEqual(again.status, Order.Status.CONFIRMED)
        self.assertEqual(again.status_history.count(), history_before)

    def test_capture_after_expiry_is_rejected(self):
        order = transition_order(self.place(), Order.Status.EXPIRED, actor='system')

        with self.assertRaises(InvalidTransitionError):
            record_payment_captured(order, 'pay_late')

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.EXPIRED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(order.payment_gateway_payment_id, '')

    def test_attach_gateway_order_requires_pending(self):
        order = transition_order(self.place(), Order.Status.CANCELLED, actor='reader-1')

        with self.assertRaises(OrderValidationError):
            attach_gateway_order(order, 'order_GW2')

    def test_payment_failure_restores_stock(self):
        order = record_payment_failed(self.place(), 'pay_2', note='Card declined')

        self.assertEqual(order.status, Order.Status.PAYMENT_FAILED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(self.stock(), (10, 8, 4))

        again = record_payment_failed(order, 'pay_2')
        self.assertEqual(again.status, Order.Status.PAYMENT_FAILED)
        self.assertEqual(self.stock(), (10, 8, 4))

    def test_refund_keeps_stock_out(self):
        order = record_payment_captured(self.place(), 'pay_3')

        order = record_refund(order, 'rfnd_1')

        self.assertEqual(order.status, Order.Status.REFUNDED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertIsNotNone(order.refunded_at)
        self.assertFalse(order.stock_restored)
        self.assertEqual(self.stock(), (8, 7, 3))
        self.assertEqual(record_refund(order, 'rfnd_1').status, Order.Status.REFUNDED)

    def test_confirmation_queued_after_commit(self):
        order = self.place()

        with patch.object(send_order_confirmation, 'delay') as mock_delay:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                record_payment_captured(order, 'pay_4')
                mock_delay.assert_not_called()

        self.assertEqual(len(callbacks), 1)
        mock_delay.assert_called_once_with(order.pk)

    def test_queue_failure_does_not_fail_order(self):
        order = self.place()

        with patch.object(send_order_confirmation, 'delay', side_effect=ConnectionError('broker down')):
            with self.captureOnCommitCallbacks(execute=True):
                record_payment_captured(order, 'pay_5')

        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CONFIRMED)


class ExpirySweepTestCase(LifecycleFixturesMixin, TestCase):
    """Reservation expiry."""

    def lapse(self, order, minutes=1):
        Order.objects.filter(pk=order.pk).update(
            reserved_until=timezone.now() - timedelta(minutes=minutes)
        )

    def test_sweep_expires_and_restores(self):
        order = self.place()
        self.lapse(order)

        summary = sweep_expired_reservations()

        self.assertEqual(summary, {'expired': 1, 'skipped': 0, 'failed': 0})
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.EXPIRED)
        self.assertTrue(order.stock_restored)
        self.assertEqual(order.status_history.last().changed_by, 'system')
        self.assertEqual(self.stock(), (10, 8, 4))

    def test_sweep_twice_restores_once(self):
        self.lapse(self.place())

        sweep_expired_reservations()
        summary = sweep_expired_reservations()

        self.assertEqual(summary, {'expired': 0, 'skipped': 0, 'failed': 0})
        self.assertEqual(self.stock(), (10, 8, 4))

    def test_sweep_ignores_live_and_paid_orders(self):
        live = self.place()
        paid = record_payment_captured(self.place(buyer='reader-2'), 'pay_6')
        self.lapse(paid)

        summary = sweep_expired_reservations()

        self.assertEqual(summary['expired'], 0)
        live.refresh_from_db()
        paid.refresh_from_db()
        self.assertEqual(live.status, Order.Status.PAYMENT_PENDING)
        self.assertEqual(paid.status, Order.Status.CONFIRMED)

    def test_sweep_with_explicit_now_and_limit(self):
        self.place()
        self.place(buyer='reader-2')

        summary = sweep_expired_reservations(now=timezone.now() + timedelta(hours=1), limit=1)

        self.assertEqual(summary['expired'], 1)
        self.assertEqual(Order.objects.filter(status=Order.Status.EXPIRED).count(), 1)

    def test_order_paid_during_sweep_is_skipped(self):
        order = record_payment_captured(self.place(), 'pay_7')

        with patch('orders.expiry.find_expired_reservations', return_value=[order.pk]):
            summary = sweep_expired_reservations()

        self.assertEqual(summary, {'expired': 0, 'skipped': 1, 'failed': 0})
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.CONFIRMED)

    def test_one_failure_does_not_stop_sweep(self):
        broken = self.place()
        healthy = self.place(buyer='reader-2')
        self.lapse(broken, minutes=5)
        self.lapse(healthy, minutes=1)

        def flaky_transition(order_id, *args, **kwargs):
            if order_id == broken.pk:
                raise RuntimeError('storage hiccup')
            return transition_order(order_id, *args, **kwargs)

        with patch('orders.expiry.transition_order', side_effect=flaky_transition):
            summary = sweep_expired_reservations()

        self.assertEqual(summary, {'expired': 1, 'skipped': 0, 'failed': 1})
        broken.refresh_from_db()
        healthy.refresh_from_db()
        self.assertEqual(broken.status, Order.Status.PAYMENT_PENDING)
        self.assertFalse(broken.stock_restored)
        self.assertEqual(healthy.status, Order.Status.EXPIRED)

    def test_periodic_task_runs_sweep(self):
        self.lapse(self.place())

        self.assertEqual(expire_stale_reservations(), {'expired': 1, 'skipped': 0, 'failed': 0})

    def test_management_command(self):
        self.lapse(self.place())
        out = StringIO()

        call_command('expire_reservations', stdout=out)

        self.assertIn('Expired: 1', out.getvalue())
        self.assertEqual(self.stock(), (10, 8, 4))


class OrderTasksTestCase(LifecycleFixturesMixin, TestCase):

    def test_confirmation_for_confirmed_order(self):
        order = record_payment_captured(self.place(), 'pay_8')

        result = send_order_confirmation(order.pk)

        self.assertEqual(result['status'], 'success')
        self.assertIn(order.order_number, result['message'])

    def test_confirmation_skips_unconfirmed_order(self):
        order = self.place()
        self.assertEqual(send_order_confirmation(order.pk)['status'], 'skipped')

    def test_confirmation_for_missing_order(self):
        self.assertEqual(send_order_confirmation(999999)['status'], 'error')

    def test_daily_report_counts_yesterday(self):
        paid = record_payment_captured(self.place(), 'pay_9')
        expired = transition_order(self.place(buyer='reader-2'), Order.Status.EXPIRED, actor='system')
        self.place(buyer='reader-3')
        yesterday = timezone.now() - timedelta(days=1)
        Order.objects.filter(pk__in=[paid.pk, expired.pk]).update(created_at=yesterday)

        stats = generate_daily_order_report()

        self.assertEqual(stats['total_orders'], 2)
        self.assertEqual(stats['paid_orders'], 1)
        self.assertEqual(stats['expired_orders'], 1)
        self.assertEqual(Decimal(stats['total_revenue']), paid.total_amount)


class AuditStockCommandTestCase(LifecycleFixturesMixin, TestCase):

    def test_clean_database(self):
        self.place()
        out = StringIO()

        call_command('audit_stock', stdout=out)

        self.assertIn('consistent', out.getvalue())

    def test_reports_and_fixes_total_mismatch(self):
        Product.objects.filter(pk=self.tote.pk).update(total_stock=3)

        with self.assertRaises(CommandError):
            call_command('audit_stock', stdout=StringIO())

        call_command('audit_stock', '--fix', stdout=StringIO())
        self.tote.refresh_from_db()
        self.assertEqual(self.tote.total_stock, 8)

    def test_fix_restores_unrestored_terminal_order(self):
        order = self.place()
        # Status written without going through the lifecycle.
        Order.objects.filter(pk=order.pk).update(status=Order.Status.CANCELLED)

        with self.assertRaises(CommandError):
            call_command('audit_stock', stdout=StringIO())

        call_command('audit_stock', '--fix', stdout=StringIO())
        order.refresh_from_db()
        self.assertTrue(order.stock_restored)
        self.assertEqual(self.stock(), (10, 8, 4))

    def test_flags_restore_on_live_order(self):
        order = self.place()
        Order.objects.filter(pk=order.pk).update(stock_restored=True)

        with self.assertRaises(CommandError):
            call_command('audit_stock', '--fix', stdout=StringIO())

        self.assertEqual(self.stock(), (8, 7, 3))

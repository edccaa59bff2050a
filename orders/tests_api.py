"""
Tests for the catalogue and order HTTP endpoints.
"""
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from inventory.models import Product, Store, VariantOption
from inventory.services import create_product
from orders.models import Order
from orders.services import place_order, transition_order


@override_settings(RATE_LIMIT_ENABLED=False)
class ApiTestCase(TestCase):

    def setUp(self):
        User = get_user_model()
        self.buyer = User.objects.create_user('asha', email='asha@example.com', password='x')
        self.other = User.objects.create_user('ravi', password='x')
        self.staff = User.objects.create_user('admin', password='x', is_staff=True)

        self.store = Store.objects.create(name='Robotics Club', location='Tech Block')
        self.kit = create_product(
            self.store, 'Arduino Kit', Decimal('899.00'),
            stock=3, status=Product.Status.ACTIVE
        )
        self.hoodie = create_product(
            self.store, 'Club Hoodie', Decimal('999.00'), status=Product.Status.ACTIVE,
            variants=[{'name': 'Size', 'options': [{'label': 'M', 'stock': 2}]}],
        )
        self.medium = VariantOption.objects.get(group__product=self.hoodie)
        self.draft = create_product(self.store, 'Secret Merch', Decimal('10.00'), stock=5)

        self.client = APIClient()
        self.client.force_authenticate(self.buyer)

    def checkout(self, items, key='key-1', **extra):
        return self.client.post('/api/orders/', {'idempotency_key': key, 'items': items, **extra}, format='json')

    def own_order(self, user=None, key='seed-1'):
        user = user or self.buyer
        order, _ = place_order(user.pk, [{'product_id': self.kit.id, 'quantity': 1}], key)
        return order


class CheckoutApiTestCase(ApiTestCase):

    def test_checkout_created(self):
        response = self.checkout([
            {'product_id': self.kit.id, 'quantity': 2},
            {'product_id': self.hoodie.id, 'variant_option_id': self.medium.id, 'quantity': 1},
        ])

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['status'], 'payment_pending')
        self.assertEqual(response.data['total_amount'], '2797.00')
        self.assertEqual(response.data['buyer_id'], str(self.buyer.pk))
        self.assertEqual(response.data['buyer_email'], 'asha@example.com')
        self.assertEqual(len(response.data['items']), 2)
        self.assertEqual(len(response.data['status_history']), 1)

    def test_checkout_retry_returns_200(self):
        items = [{'product_id': self.kit.id, 'quantity': 1}]
        first = self.checkout(items)
        second = self.checkout(items)

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(first.data['id'], second.data['id'])
        self.kit.refresh_from_db()
        self.assertEqual(self.kit.total_stock, 2)

    def test_checkout_stock_unavailable(self):
        response = self.checkout([{'product_id': self.kit.id, 'quantity': 4}])

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'stock_unavailable')
        self.assertIn('Arduino Kit', response.data['detail'])

    def test_checkout_unknown_product(self):
        response = self.checkout([{'product_id': 999999, 'quantity': 1}])

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['error'], 'not_found')

    def test_checkout_validation(self):
        self.assertEqual(self.checkout([]).status_code, 400)
        self.assertEqual(self.checkout([{'product_id': self.kit.id, 'quantity': 0}]).status_code, 400)

        response = self.checkout(
            [{'product_id': self.kit.id, 'quantity': 1}],
            delivery_type='hostel-delivery', delivery_hostel='H4'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['error'], 'validation')
        self.assertEqual(response.data['field'], 'delivery')

    def test_checkout_draft_product_rejected(self):
        response = self.checkout([{'product_id': self.draft.id, 'quantity': 1}])

        self.assertEqual(response.status_code, 400)

    def test_checkout_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self.checkout([{'product_id': self.kit.id, 'quantity': 1}])

        self.assertIn(response.status_code, (401, 403))
        self.assertEqual(Order.objects.count(), 0)


class OrderApiTestCase(ApiTestCase):

    def test_buyer_lists_own_orders(self):
        mine = self.own_order()
        self.own_order(user=self.other, key='seed-2')

        response = self.client.get('/api/orders/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row['id'] for row in response.data['results']], [mine.id])

    def test_staff_lists_all_with_status_filter(self):
        self.own_order()
        self.own_order(user=self.other, key='seed-2')
        self.client.force_authenticate(self.staff)

        self.assertEqual(self.client.get('/api/orders/').data['count'], 2)
        self.assertEqual(self.client.get('/api/orders/?status=confirmed').data['count'], 0)

    def test_detail_hidden_from_other_buyers(self):
        order = self.own_order(user=self.other, key='seed-2')

        self.assertEqual(self.client.get(f'/api/orders/{order.id}/').status_code, 404)

    def test_detail(self):
        order = self.own_order()

        response = self.client.get(f'/api/orders/{order.id}/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['order_number'], order.order_number)
        self.assertIn('confirmed', response.data['allowed_transitions'])

    def test_transition_requires_staff(self):
        order = self.own_order()

        response = self.client.post(f'/api/orders/{order.id}/transition/', {'status': 'confirmed'}, format='json')

        self.assertEqual(response.status_code, 403)

    def test_staff_transition(self):
        order = self.own_order()
        self.client.force_authenticate(self.staff)

        response = self.client.post(f'/api/orders/{order.id}/transition/', {'status': 'confirmed'}, format='json')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'confirmed')

        response = self.client.post(
            f'/api/orders/{order.id}/transition/', {'status': 'delivered'}, format='json'
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'invalid_transition')
        self.assertEqual(response.data['current_status'], 'confirmed')

    def test_transition_unknown_order(self):
        self.client.force_authenticate(self.staff)

        response = self.client.post('/api/orders/999999/transition/', {'status': 'confirmed'}, format='json')

        self.assertEqual(response.status_code, 404)

    def test_buyer_cancel_restores_stock(self):
        order = self.own_order()

        response = self.client.post(f'/api/orders/{order.id}/cancel/', {'reason': 'Oops'}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['status'], 'cancelled')
        self.assertEqual(response.data['cancel_reason'], 'Oops')
        self.kit.refresh_from_db()
        self.assertEqual(self.kit.total_stock, 3)

    def test_buyer_cancel_refused_once_processing(self):
        order = self.own_order()
        transition_order(order, Order.Status.CONFIRMED)
        transition_order(order, Order.Status.PROCESSING)

        response = self.client.post(f'/api/orders/{order.id}/cancel/', {}, format='json')

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'invalid_transition')
        self.assertEqual(response.data['current_status'], 'processing')
        self.assertIn('ask the store to cancel it', response.data['detail'])

    def test_cannot_cancel_someone_elses_order(self):
        order = self.own_order(user=self.other, key='seed-2')

        response = self.client.post(f'/api/orders/{order.id}/cancel/', {}, format='json')

        self.assertEqual(response.status_code, 404)

    def test_stats_staff_only(self):
        self.own_order()
        self.assertEqual(self.client.get('/api/orders/stats/').status_code, 403)

        self.client.force_authenticate(self.staff)
        response = self.client.get('/api/orders/stats/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['total_orders'], 1)
        self.assertEqual(response.data['pending_orders'], 1)


class CatalogueApiTestCase(ApiTestCase):

    def test_stores(self):
        response = self.client.get('/api/stores/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['results'][0]['product_count'], 2)

    def test_buyers_see_only_sellable_products(self):
        response = self.client.get(f'/api/products/?store_id={self.store.id}')

        names = [row['name'] for row in response.data['results']]
        self.assertEqual(names, ['Arduino Kit', 'Club Hoodie'])
        self.assertEqual(self.client.get(f'/api/products/{self.draft.id}/').status_code, 404)

    def test_staff_status_filter(self):
        self.client.force_authenticate(self.staff)

        response = self.client.get('/api/products/?status=draft')

        self.assertEqual([row['name'] for row in response.data['results']], ['Secret Merch'])

    def test_product_detail_with_variants(self):
        response = self.client.get(f'/api/products/{self.hoodie.id}/')

        self.assertEqual(response.status_code, 200)
        option = response.data['variant_groups'][0]['options'][0]
        self.assertEqual(option['label'], 'M')
        self.assertEqual(option['effective_price'], '999.00')

    def test_recalculate_stock(self):
        Product.objects.filter(pk=self.hoodie.pk).update(total_stock=0, status=Product.Status.SOLDOUT)
        url = f'/api/products/{self.hoodie.id}/recalculate-stock/'

        self.assertEqual(self.client.post(url).status_code, 403)

        self.client.force_authenticate(self.staff)
        response = self.client.post(url)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['previous_total_stock'], 0)
        self.assertEqual(response.data['total_stock'], 2)
        self.assertEqual(response.data['status'], 'active')

    def test_health(self):
        self.client.force_authenticate(None)
        self.assertEqual(self.client.get('/health/').json()['status'], 'healthy')

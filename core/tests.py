"""
Tests for Redis-backed rate limiting.

The Redis client is replaced with a mock; no server is needed.
"""
from unittest.mock import MagicMock, patch

import redis
from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.test import APIRequestFactory, force_authenticate
from rest_framework.views import APIView

from core import rate_limiting
from core.rate_limiting import get_client_key, get_redis_client, rate_limit


class PingView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    @rate_limit(max_requests=2, window_seconds=60)
    def get(self, request):
        return Response({'ok': True})


def fake_redis(count, ttl=42):
    client = MagicMock()
    client.incr.return_value = count
    client.ttl.return_value = ttl
    return client


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitTestCase(TestCase):

    def setUp(self):
        self.factory = APIRequestFactory()

    def call(self, client):
        request = self.factory.get('/ping/', REMOTE_ADDR='10.0.0.7')
        with patch('core.rate_limiting.get_redis_client', return_value=client):
            return PingView.as_view()(request)

    def test_first_request_sets_window(self):
        client = fake_redis(1)

        response = self.call(client)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-RateLimit-Limit'], '2')
        self.assertEqual(response['X-RateLimit-Remaining'], '1')
        client.incr.assert_called_once_with('rate_limit:get:ip:10.0.0.7')
        client.expire.assert_called_once_with('rate_limit:get:ip:10.0.0.7', 60)

    def test_later_request_keeps_window(self):
        client = fake_redis(2)

        response = self.call(client)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-RateLimit-Remaining'], '0')
        client.expire.assert_not_called()

    def test_over_limit_rejected(self):
        response = self.call(fake_redis(3, ttl=17))

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '17')
        self.assertEqual(response.data['retry_after'], 17)

    def test_redis_error_fails_open(self):
        client = fake_redis(1)
        client.incr.side_effect = redis.ConnectionError('down')

        self.assertEqual(self.call(client).status_code, 200)

    def test_redis_unavailable_skips_limit(self):
        self.assertEqual(self.call(None).status_code, 200)

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled(self):
        client = fake_redis(99)

        self.assertEqual(self.call(client).status_code, 200)
        client.incr.assert_not_called()


class ClientKeyTestCase(TestCase):

    def setUp(self):
        self.factory = APIRequestFactory()

    def test_forwarded_ip_for_anonymous(self):
        request = PingView().initialize_request(
            self.factory.get('/ping/', HTTP_X_FORWARDED_FOR='203.0.113.5, 10.0.0.1')
        )

        self.assertEqual(get_client_key(request), 'ip:203.0.113.5')

    def test_user_key_for_authenticated(self):
        user = get_user_model().objects.create_user('asha', password='x')
        django_request = self.factory.get('/ping/')
        force_authenticate(django_request, user=user)
        request = PingView().initialize_request(django_request)

        self.assertEqual(get_client_key(request), f'user:{user.pk}')


class RedisClientTestCase(TestCase):

    def setUp(self):
        rate_limiting._redis_client = None

    def tearDown(self):
        rate_limiting._redis_client = None

    def test_unreachable_redis_returns_none(self):
        broken = MagicMock()
        broken.ping.side_effect = redis.ConnectionError('refused')

        with patch('core.rate_limiting.redis.Redis.from_url', return_value=broken):
            self.assertIsNone(get_redis_client())

    def test_client_is_cached(self):
        healthy = MagicMock()

        with patch('core.rate_limiting.redis.Redis.from_url', return_value=healthy) as from_url:
            self.assertIs(get_redis_client(), healthy)
            self.assertIs(get_redis_client(), healthy)

        from_url.assert_called_once()

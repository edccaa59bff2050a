"""
Order API Views.

Implements:
- GET /orders/ - List own orders (all orders for staff)
- POST /orders/ - Checkout: reserve stock and create the order
- GET /orders/{id}/ - Order detail with items and status history
- POST /orders/{id}/transition/ - Staff status change
- POST /orders/{id}/cancel/ - Buyer cancellation
- GET /orders/stats/ - Staff statistics
"""
import logging
from django.conf import settings
from django.db import models
from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import rate_limit
from .exceptions import OrderError
from .models import Order
from .serializers import (
    OrderCancelSerializer,
    OrderCreateSerializer,
    OrderListSerializer,
    OrderSerializer,
    OrderTransitionSerializer,
)
from .services import cancel_order, place_order, transition_order

logger = logging.getLogger(__name__)


def order_error_response(exc: OrderError) -> Response:
    """Render a domain error with its machine code and HTTP status."""
    body = {'error': exc.code, 'detail': str(exc)}
    if getattr(exc, 'field', None):
        body['field'] = exc.field
    if hasattr(exc, 'current'):
        body['current_status'] = exc.current
        body['allowed_transitions'] = exc.allowed
    return Response(body, status=exc.status_code)


def visible_orders(request):
    queryset = Order.objects.select_related('store')
    if not request.user.is_staff:
        queryset = queryset.filter(buyer_id=str(request.user.pk))
    return queryset


def fetch_order(order_id):
    """Fresh order with all relations for a response body."""
    return Order.objects.select_related('store').prefetch_related(
        'items', 'status_history'
    ).get(pk=order_id)


class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List orders with optimized queries
    POST: Place an order, reserving stock for every line

    Query Parameters (GET):
        - status: Filter by status
        - store_id: Filter by store (staff)
    """

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = visible_orders(self.request).prefetch_related('items')

        store_id = self.request.query_params.get('store_id')
        if store_id:
            queryset = queryset.filter(store_id=store_id)

        status_filter = self.request.query_params.get('status', '').lower()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        return queryset.order_by('-created_at')

    @rate_limit(
        max_requests=settings.CHECKOUT_RATE_LIMIT,
        window_seconds=settings.CHECKOUT_RATE_WINDOW_SECONDS
    )
    def create(self, request, *args, **kwargs):
        """
        Place an order.

        Returns:
            - 201: Order created in payment_pending
            - 200: Same idempotency key retried; the original order
            - 400: Validation error (field detail)
            - 404: Unknown product
            - 409: Stock unavailable
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user = request.user

        try:
            order, created = place_order(
                buyer_id=user.pk,
                items=data['items'],
                idempotency_key=data['idempotency_key'],
                delivery=serializer.get_delivery(),
                buyer_snapshot={
                    'name': user.get_full_name() or user.get_username(),
                    'email': user.email,
                    'phone': data.get('buyer_phone', ''),
                },
                buyer_note=data.get('buyer_note', ''),
            )
        except OrderError as e:
            logger.warning(f"Checkout rejected for user {user.pk}: {e}")
            return order_error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error placing order: {e}")
            return Response(
                {'error': 'server_error', 'detail': 'An unexpected error occurred'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        return Response(OrderSerializer(fetch_order(order.pk)).data, status=status_code)


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with items and status history.

    Buyers only see their own orders.
    """
    serializer_class = OrderSerializer

    def get_queryset(self):
        return visible_orders(self.request).prefetch_related('items', 'status_history')


class OrderTransitionView(APIView):
    """
    POST: Move an order to another status (staff only).

    Request Body:
        {"status": "processing", "note": "Packed"}
    """
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = OrderTransitionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = transition_order(
                pk,
                serializer.validated_data['status'],
                actor=request.user.get_username(),
                note=serializer.validated_data['note'],
            )
        except OrderError as e:
            logger.warning(f"Transition of order #{pk} rejected: {e}")
            return order_error_response(e)

        return Response(OrderSerializer(fetch_order(order.pk)).data)


class OrderCancelView(APIView):
    """
    POST: Cancel one's own order while it is payment_pending or confirmed.
    """

    def post(self, request, pk):
        serializer = OrderCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = generics.get_object_or_404(visible_orders(request), pk=pk)

        try:
            order = cancel_order(order, actor=request.user.pk, reason=serializer.validated_data['reason'])
        except OrderError as e:
            logger.warning(f"Cancellation of order {order.order_number} rejected: {e}")
            return order_error_response(e)

        return Response(OrderSerializer(fetch_order(order.pk)).data)


class OrderStatsView(APIView):
    """
    GET: Get order statistics for a store or overall (staff only).

    Query Parameters:
        - store_id: Filter stats by store (optional)
    """
    permission_classes = [IsAdminUser]

    def get(self, request):
        from django.db.models import Avg, Count, Sum

        queryset = Order.objects.all()

        store_id = request.query_params.get('store_id')
        if store_id:
            queryset = queryset.filter(store_id=store_id)

        paid = models.Q(payment_status=Order.PaymentStatus.CAPTURED)
        stats = queryset.aggregate(
            total_orders=Count('id'),
            pending_orders=Count('id', filter=models.Q(status=Order.Status.PAYMENT_PENDING)),
            confirmed_orders=Count('id', filter=models.Q(status=Order.Status.CONFIRMED)),
            delivered_orders=Count('id', filter=models.Q(status=Order.Status.DELIVERED)),
            cancelled_orders=Count('id', filter=models.Q(status=Order.Status.CANCELLED)),
            expired_orders=Count('id', filter=models.Q(status=Order.Status.EXPIRED)),
            failed_orders=Count('id', filter=models.Q(status=Order.Status.PAYMENT_FAILED)),
            refunded_orders=Count('id', filter=models.Q(status=Order.Status.REFUNDED)),
            total_revenue=Sum('total_amount', filter=paid),
            avg_order_value=Avg('total_amount', filter=paid)
        )

        # Handle None values
        stats['total_revenue'] = str(stats['total_revenue'] or '0.00')
        stats['avg_order_value'] = str(round(stats['avg_order_value'] or 0, 2))

        return Response(stats)

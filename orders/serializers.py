"""
Serializers for order models.
"""
from rest_framework import serializers
from .models import Order, OrderItem, OrderStatusChange
from inventory.serializers import StoreMinimalSerializer


class OrderItemSerializer(serializers.ModelSerializer):
    """Frozen line snapshot."""
    display_name = serializers.CharField(read_only=True)

    class Meta:
        model = OrderItem
        fields = [
            'id', 'product', 'variant_option', 'display_name', 'snapshot_name',
            'snapshot_image', 'variant_label', 'quantity', 'unit_price', 'total_price'
        ]


class OrderStatusChangeSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusChange
        fields = ['status', 'changed_at', 'changed_by', 'note']


class OrderItemCreateSerializer(serializers.Serializer):
    """Serializer for order items in a checkout request."""
    product_id = serializers.IntegerField(min_value=1)
    variant_option_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    quantity = serializers.IntegerField(min_value=1)


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items and status history.
    Uses prefetch_related for optimized queries.
    """
    store = StoreMinimalSerializer(read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    status_history = OrderStatusChangeSerializer(many=True, read_only=True)
    allowed_transitions = serializers.SerializerMethodField()
    is_paid = serializers.BooleanField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'store', 'buyer_id', 'status', 'allowed_transitions',
            'total_amount', 'items', 'reserved_until', 'stock_restored',
            'payment_status', 'payment_amount', 'payment_currency', 'is_paid', 'paid_at',
            'delivery_type', 'delivery_hostel', 'delivery_room_no',
            'pickup_slot', 'pickup_location',
            'buyer_name', 'buyer_email', 'buyer_phone', 'buyer_note',
            'cancelled_at', 'cancel_reason', 'status_history',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_allowed_transitions(self, obj):
        return sorted(obj.allowed_transitions)


class OrderListSerializer(serializers.ModelSerializer):
    """
    Optimized serializer for listing orders.
    Uses select_related for store data.
    """
    store_name = serializers.CharField(source='store.name', read_only=True)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'store_name', 'status', 'payment_status',
            'total_amount', 'item_count', 'reserved_until', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return sum(item.quantity for item in obj.items.all())
        return obj.item_count


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for checkout via POST /orders/

    Request format:
    {
        "idempotency_key": "5f0c...",
        "items": [
            {"product_id": 1, "quantity": 2},
            {"product_id": 3, "variant_option_id": 7, "quantity": 1}
        ],
        "delivery_type": "hostel-delivery",
        "delivery_hostel": "H4",
        "delivery_room_no": "212"
    }
    """
    idempotency_key = serializers.CharField(max_length=100)
    items = OrderItemCreateSerializer(many=True, allow_empty=False)
    delivery_type = serializers.ChoiceField(
        choices=Order.DeliveryType.choices,
        default=Order.DeliveryType.PICKUP
    )
    delivery_hostel = serializers.CharField(max_length=50, required=False, allow_blank=True)
    delivery_room_no = serializers.CharField(max_length=20, required=False, allow_blank=True)
    pickup_slot = serializers.CharField(max_length=50, required=False, allow_blank=True)
    pickup_location = serializers.CharField(max_length=100, required=False, allow_blank=True)
    buyer_phone = serializers.CharField(max_length=20, required=False, allow_blank=True)
    buyer_note = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')

    def get_delivery(self):
        data = self.validated_data
        return {
            'type': data['delivery_type'],
            'hostel': data.get('delivery_hostel', ''),
            'room_no': data.get('delivery_room_no', ''),
            'pickup_slot': data.get('pickup_slot', ''),
            'pickup_location': data.get('pickup_location', ''),
        }


class OrderTransitionSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)
    note = serializers.CharField(max_length=300, required=False, allow_blank=True, default='')


class OrderCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=300, required=False, allow_blank=True, default='')

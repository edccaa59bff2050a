"""
Django Admin configuration for order models.

Orders are historical records: status only changes through the
transition actions below, never by editing the field.
"""
from django.contrib import admin, messages
from .exceptions import InvalidTransitionError
from .models import Order, OrderItem, OrderStatusChange
from .services import transition_order


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    fields = ['display_name', 'product', 'variant_option', 'quantity', 'unit_price', 'total_price']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class OrderStatusChangeInline(admin.TabularInline):
    model = OrderStatusChange
    extra = 0
    fields = ['status', 'changed_at', 'changed_by', 'note']
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


def _transition_action(new_status, label):
    def action(modeladmin, request, queryset):
        moved = 0
        for order in queryset:
            try:
                transition_order(order.pk, new_status, actor=request.user.get_username(), note='Admin action')
                moved += 1
            except InvalidTransitionError as e:
                modeladmin.message_user(request, f"{order.order_number}: {e}", level=messages.WARNING)
        modeladmin.message_user(request, f"{moved} order(s) marked {label}.")

    action.__name__ = f"mark_{new_status}"
    action.short_description = f"Mark selected orders as {label}"
    return action


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'order_number', 'store', 'buyer_id', 'status', 'payment_status',
        'total_amount', 'item_count', 'reserved_until', 'created_at'
    ]
    list_filter = ['status', 'payment_status', 'delivery_type', 'store', 'created_at']
    search_fields = ['order_number', 'buyer_id', 'buyer_email', 'store__name', 'idempotency_key']
    ordering = ['-created_at']
    readonly_fields = [
        'order_number', 'store', 'buyer_id', 'status', 'total_amount', 'idempotency_key',
        'reserved_until', 'stock_restored', 'payment_gateway_order_id',
        'payment_gateway_payment_id', 'payment_signature', 'payment_status', 'payment_amount',
        'payment_currency', 'payment_method', 'paid_at', 'refund_id', 'refunded_at',
        'cancelled_at', 'cancelled_by', 'cancel_reason', 'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline, OrderStatusChangeInline]
    actions = [
        _transition_action(Order.Status.PROCESSING, 'processing'),
        _transition_action(Order.Status.READY, 'ready'),
        _transition_action(Order.Status.DELIVERED, 'delivered'),
        _transition_action(Order.Status.CANCELLED, 'cancelled'),
    ]

    def item_count(self, obj):
        return obj.item_count
    item_count.short_description = 'Items'

    def has_delete_permission(self, request, obj=None):
        return False

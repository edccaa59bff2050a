"""
Celery tasks for order processing.

Tasks:
    - send_order_confirmation: Async notification after payment confirms an order
    - expire_stale_reservations: Periodic expiry sweep (Celery beat)
    - generate_daily_order_report: Daily statistics
"""
import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def send_order_confirmation(self, order_id: int):
    """
    Async task queued once an order's payment is captured.

    In production, this would:
    - Email the buyer their order number and pickup/delivery details
    - Notify the club's store admins

    Args:
        order_id: ID of the confirmed order

    Returns:
        Dict with confirmation details
    """
    from orders.models import Order

    try:
        order = Order.objects.select_related('store').prefetch_related('items').get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order #{order_id} not found for confirmation")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if order.status != Order.Status.CONFIRMED:
        logger.warning(
            f"Order {order.order_number} is not confirmed (status: {order.status}), "
            "skipping confirmation"
        )
        return {
            'status': 'skipped',
            'message': f'Order {order_id} is not confirmed'
        }

    items_summary = [
        f"  - {item.quantity}x {item.display_name} @ {order.payment_currency} {item.unit_price}"
        for item in order.items.all()
    ]
    if order.delivery_type == Order.DeliveryType.HOSTEL_DELIVERY:
        handover = f"Deliver to: {order.delivery_hostel}, room {order.delivery_room_no}"
    else:
        handover = f"Pickup: {order.pickup_location or order.store.location} {order.pickup_slot}".rstrip()

    confirmation_message = f"""
    ===============================================
    ORDER CONFIRMATION - {order.order_number}
    ===============================================
    Store: {order.store.name}
    Buyer: {order.buyer_name or order.buyer_id}
    Total: {order.payment_currency} {order.total_amount}
    {handover}

    Items:
    {chr(10).join(items_summary)}

    Paid: {order.paid_at.strftime('%Y-%m-%d %H:%M:%S') if order.paid_at else '-'}
    ===============================================
    """

    logger.info(confirmation_message)

    return {
        'status': 'success',
        'order_id': order.id,
        'message': f'Confirmation sent for order {order.order_number}'
    }


@shared_task
def expire_stale_reservations(limit: int = None):
    """
    Periodic task releasing stock held by unpaid orders past their deadline.

    Scheduled by Celery beat every ORDER_EXPIRY_SWEEP_SECONDS.
    """
    from orders.expiry import sweep_expired_reservations

    return sweep_expired_reservations(limit=limit)


@shared_task
def generate_daily_order_report():
    """
    Generate daily order statistics report.

    Scheduled via Celery Beat shortly after midnight.
    """
    from orders.models import Order
    from django.utils import timezone
    from django.db.models import Count, Q, Sum
    from datetime import timedelta

    yesterday = timezone.localdate() - timedelta(days=1)
    orders = Order.objects.filter(created_at__date=yesterday)

    paid_statuses = [
        Order.Status.CONFIRMED,
        Order.Status.PROCESSING,
        Order.Status.READY,
        Order.Status.DELIVERED,
    ]
    stats = orders.aggregate(
        total_orders=Count('id'),
        paid_orders=Count('id', filter=Q(status__in=paid_statuses)),
        expired_orders=Count('id', filter=Q(status=Order.Status.EXPIRED)),
        failed_orders=Count('id', filter=Q(status=Order.Status.PAYMENT_FAILED)),
        cancelled_orders=Count('id', filter=Q(status=Order.Status.CANCELLED)),
        total_revenue=Sum('total_amount', filter=Q(status__in=paid_statuses)),
    )

    report = f"""
    ===============================================
    DAILY ORDER REPORT - {yesterday}
    ===============================================
    Total Orders: {stats['total_orders']}
    Paid: {stats['paid_orders']}
    Expired: {stats['expired_orders']}
    Payment Failed: {stats['failed_orders']}
    Cancelled: {stats['cancelled_orders']}
    Total Revenue: {stats['total_revenue'] or 0}
    ===============================================
    """

    logger.info(report)

    stats['total_revenue'] = str(stats['total_revenue'] or 0)
    return stats

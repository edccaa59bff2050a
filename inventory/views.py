"""
Inventory API Views with optimized queries.

Implements:
- GET /stores/ - Active storefronts
- GET /products/ - Catalogue listing, filterable by store and status
- GET /products/{id}/ - Product detail with variant groups and options
- POST /products/{id}/recalculate-stock/ - Staff repair of total_stock
"""
import logging

from rest_framework import generics
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import Product, Store
from .serializers import ProductMinimalSerializer, ProductSerializer, StoreSerializer
from .stock import repair_total_stock

logger = logging.getLogger(__name__)


# =============================================================================
# Store Views
# =============================================================================

class StoreListView(generics.ListAPIView):
    """
    GET: List all active stores
    """
    queryset = Store.objects.filter(is_active=True)
    serializer_class = StoreSerializer


# =============================================================================
# Product Views
# =============================================================================

class ProductListView(generics.ListAPIView):
    """
    GET: List products.

    Query Parameters:
        - store_id: Filter by store
        - status: Filter by status (staff only; buyers see active and soldout)

    Uses select_related to eliminate N+1 queries.
    """
    serializer_class = ProductMinimalSerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('store')

        store_id = self.request.query_params.get('store_id')
        if store_id:
            queryset = queryset.filter(store_id=store_id)

        status_filter = self.request.query_params.get('status', '').lower()
        if self.request.user.is_staff:
            if status_filter in Product.Status.values:
                queryset = queryset.filter(status=status_filter)
        else:
            visible = [Product.Status.ACTIVE, Product.Status.SOLDOUT]
            if status_filter in visible:
                visible = [status_filter]
            queryset = queryset.filter(status__in=visible, store__is_active=True)

        return queryset.order_by('name')


class ProductDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve a product with its variant groups and options.
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('store').prefetch_related(
            'variant_groups__options'
        )
        if not self.request.user.is_staff:
            queryset = queryset.filter(status__in=[Product.Status.ACTIVE, Product.Status.SOLDOUT])
        return queryset


class ProductRecalculateStockView(APIView):
    """
    POST: Rewrite total_stock from the variant options (administrative repair).
    """
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        product = generics.get_object_or_404(Product.objects.all(), pk=pk)
        previous = product.total_stock
        product = repair_total_stock(product.pk)
        logger.info(f"Stock recalculated for product #{pk} by {request.user}")
        return Response({
            'id': product.id,
            'previous_total_stock': previous,
            'total_stock': product.total_stock,
            'status': product.status,
        })

"""
Serializers for inventory models.
Read-only representations for the catalogue API; stock is never written here.
"""
from rest_framework import serializers
from .models import Product, Store, VariantGroup, VariantOption


class StoreSerializer(serializers.ModelSerializer):
    """Serializer for Store model."""
    product_count = serializers.SerializerMethodField()

    class Meta:
        model = Store
        fields = ['id', 'name', 'location', 'is_active', 'product_count', 'created_at', 'updated_at']
        read_only_fields = fields

    def get_product_count(self, obj):
        """Count of products buyers can currently see."""
        return obj.products.filter(
            status__in=[Product.Status.ACTIVE, Product.Status.SOLDOUT]
        ).count()


class StoreMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested store representation."""
    class Meta:
        model = Store
        fields = ['id', 'name', 'location']


class VariantOptionSerializer(serializers.ModelSerializer):
    effective_price = serializers.SerializerMethodField()

    class Meta:
        model = VariantOption
        fields = ['id', 'label', 'sku', 'stock', 'price', 'effective_price', 'is_available']

    def get_effective_price(self, obj):
        return str(obj.group.product.get_effective_price(obj))


class VariantGroupSerializer(serializers.ModelSerializer):
    options = VariantOptionSerializer(many=True, read_only=True)

    class Meta:
        model = VariantGroup
        fields = ['id', 'name', 'options']


class ProductSerializer(serializers.ModelSerializer):
    """
    Serializer for Product with nested store and variant groups.
    Uses select_related/prefetch_related in the view.
    """
    store = StoreMinimalSerializer(read_only=True)
    variant_groups = VariantGroupSerializer(many=True, read_only=True)
    is_on_sale = serializers.BooleanField(read_only=True)
    is_out_of_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'store', 'name', 'description', 'category', 'price',
            'image_url', 'has_variants', 'variant_groups', 'total_stock',
            'status', 'is_on_sale', 'is_out_of_stock',
            'sale_starts_at', 'sale_ends_at', 'max_per_student',
            'requires_delivery', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for listings and nested representations."""
    store_name = serializers.CharField(source='store.name', read_only=True)

    class Meta:
        model = Product
        fields = ['id', 'name', 'price', 'store_name', 'status', 'total_stock', 'has_variants']

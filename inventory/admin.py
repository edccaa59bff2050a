"""
Django Admin configuration for inventory models.

Stock edited here bypasses the reservation primitives, so every save of a
variant product recomputes its total_stock afterwards, and plain products
go through set_product_stock to keep soldout/active in step with stock.
"""
from django.contrib import admin
from .models import Product, Store, VariantGroup, VariantOption
from .services import set_product_stock
from .stock import repair_total_stock


@admin.register(Store)
class StoreAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'location', 'is_active', 'product_count', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'location']
    ordering = ['name']

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


class VariantGroupInline(admin.TabularInline):
    model = VariantGroup
    extra = 0
    show_change_link = True


class VariantOptionInline(admin.TabularInline):
    model = VariantOption
    extra = 0


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'store', 'price', 'status', 'total_stock', 'has_variants', 'order_count']
    list_filter = ['status', 'category', 'store', 'has_variants']
    search_fields = ['name', 'description', 'store__name']
    ordering = ['name']
    raw_id_fields = ['store']
    readonly_fields = ['order_count', 'created_at', 'updated_at']
    inlines = [VariantGroupInline]
    actions = ['recalculate_stock']

    def get_readonly_fields(self, request, obj=None):
        fields = list(super().get_readonly_fields(request, obj))
        if obj is not None and obj.has_variants:
            fields.append('total_stock')
        return fields

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        if not obj.has_variants and {'total_stock', 'status'} & set(form.changed_data):
            obj.status = set_product_stock(obj.pk, obj.total_stock).status

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        if form.instance.has_variants:
            repair_total_stock(form.instance.pk)

    @admin.action(description='Recalculate total stock from variant options')
    def recalculate_stock(self, request, queryset):
        repaired = 0
        for product in queryset.filter(has_variants=True):
            repair_total_stock(product.pk)
            repaired += 1
        self.message_user(request, f"Recalculated stock for {repaired} product(s).")


@admin.register(VariantGroup)
class VariantGroupAdmin(admin.ModelAdmin):
    list_display = ['id', 'product', 'name', 'position']
    search_fields = ['product__name', 'name']
    raw_id_fields = ['product']
    inlines = [VariantOptionInline]

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        repair_total_stock(form.instance.product_id)

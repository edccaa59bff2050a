"""
Catalogue administration for club storefront products.

Admin edits bypass the reserve/restore primitives, so each of them
recomputes the denormalized ``total_stock`` before returning.
Never call these from checkout code.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction

from .models import Product, Store, VariantGroup, VariantOption
from .stock import repair_total_stock

logger = logging.getLogger(__name__)


def create_product(
    store: Store,
    name: str,
    price,
    variants: Optional[List[Dict]] = None,
    stock: int = 0,
    **fields,
) -> Product:
    """
    Create a product together with its variant groups and options.

    Args:
        store: Owning storefront
        name: Product name
        price: Base unit price
        variants: Optional list of groups, each
            ``{'name': 'Size', 'options': [{'label': 'M', 'stock': 10, 'price': None}]}``
        stock: Stock of a non-variant product (ignored when variants are given)
        **fields: Any other Product field (status, category, max_per_student, ...)

    Returns:
        The saved Product with ``total_stock`` computed from its options.
    """
    variants = variants or []
    for group in variants:
        if not group.get('options'):
            raise ValidationError(f"Variant group '{group.get('name')}' needs at least one option")
        for option in group['options']:
            if option.get('stock', 0) < 0:
                raise ValidationError("Stock cannot be negative")
    if stock < 0:
        raise ValidationError("Stock cannot be negative")

    with transaction.atomic():
        product = Product.objects.create(
            store=store,
            name=name,
            price=Decimal(str(price)),
            has_variants=bool(variants),
            total_stock=0 if variants else stock,
            **fields,
        )

        for group_position, group in enumerate(variants):
            variant_group = VariantGroup.objects.create(
                product=product,
                name=group['name'],
                position=group_position,
            )
            VariantOption.objects.bulk_create([
                VariantOption(
                    group=variant_group,
                    label=option['label'],
                    sku=(option.get('sku') or '').strip().upper(),
                    stock=option.get('stock', 0),
                    price=(
                        Decimal(str(option['price']))
                        if option.get('price') is not None else None
                    ),
                    is_available=option.get('is_available', True),
                    position=option_position,
                )
                for option_position, option in enumerate(group['options'])
            ])

        if variants:
            product.recalculate_total_stock()
        if product.total_stock == 0 and product.status == Product.Status.ACTIVE:
            product.status = Product.Status.SOLDOUT
        product.save(update_fields=['total_stock', 'status', 'updated_at'])

    logger.info(
        f"Created product #{product.id} '{product.name}' for store {store.name} "
        f"with {product.total_stock} unit(s)"
    )
    return product


def set_option_stock(option_id, stock: int) -> Product:
    """Overwrite one option's stock and recompute the product total."""
    if stock < 0:
        raise ValidationError("Stock cannot be negative")

    with transaction.atomic():
        option = VariantOption.objects.select_related('group').get(pk=option_id)
        product_id = option.group.product_id
        # Take the product row first, same order as the reservation path.
        Product.objects.select_for_update().get(pk=product_id)
        VariantOption.objects.filter(pk=option_id).update(stock=stock)
        product = repair_total_stock(product_id)

    logger.info(f"Option {option_id} stock set to {stock}; product {product_id} total {product.total_stock}")
    return product


def set_product_stock(product_id, stock: int) -> Product:
    """Overwrite a non-variant product's stock, re-deriving soldout/active."""
    if stock < 0:
        raise ValidationError("Stock cannot be negative")

    with transaction.atomic():
        product = Product.objects.select_for_update().get(pk=product_id)
        if product.has_variants:
            raise ValidationError("Variant products are stocked per option")

        product.total_stock = stock
        if stock == 0 and product.status == Product.Status.ACTIVE:
            product.status = Product.Status.SOLDOUT
        elif stock > 0 and product.status == Product.Status.SOLDOUT:
            product.status = Product.Status.ACTIVE
        product.save(update_fields=['total_stock', 'status', 'updated_at'])

    logger.info(f"Product {product_id} stock set to {stock}")
    return product

"""
Management command to seed the database with sample data.

Generates:
- Club storefronts
- Products per store, a share of them with size/colour variants
- A few products in non-active statuses (draft, paused)

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Product, Store
from inventory.services import create_product


class Command(BaseCommand):
    help = 'Seed the database with sample club stores and products'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--stores',
            type=int,
            default=6,
            help='Number of stores to create (default: 6)',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=12,
            help='Number of products per store (default: 12)',
        )
        parser.add_argument(
            '--seed',
            type=int,
            default=None,
            help='Random seed for reproducible data',
        )

    def handle(self, *args, **options):
        if options['seed'] is not None:
            random.seed(options['seed'])

        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            stores = self._create_stores(options['stores'])
            for store in stores:
                self._create_products(store, options['products'])

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        """Clear all existing data."""
        from orders.models import Order, OrderCounter

        # Orders go first; products are PROTECTed by order items.
        Order.objects.all().delete()
        OrderCounter.objects.all().delete()
        Product.objects.all().delete()
        Store.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_stores(self, count):
        """Create sample club storefronts."""
        clubs = [
            ('Robotics Club', 'Tech Block, Room 104'),
            ('Photography Society', 'Student Activity Centre'),
            ('Music Club', 'Auditorium Green Room'),
            ('Drama Society', 'Open Air Theatre'),
            ('Coding Club', 'Library Annexe'),
            ('Literary Circle', 'Central Library Foyer'),
            ('Sports Council', 'Gymkhana Office'),
            ('Entrepreneurship Cell', 'Incubation Centre'),
        ]

        stores = []
        for i in range(count):
            name, location = clubs[i % len(clubs)]
            if i >= len(clubs):
                name = f"{name} {i // len(clubs) + 1}"
            store, created = Store.objects.get_or_create(
                name=name,
                defaults={'location': location},
            )
            stores.append(store)
            if created:
                self.stdout.write(f'  Created store: {name}')

        self.stdout.write(self.style.SUCCESS(f'Created {len(stores)} stores'))
        return stores

    def _create_products(self, store, count):
        """Create products for one store via the catalogue service."""
        templates = [
            ('Club Hoodie', Product.Category.MERCH, True),
            ('Club T-Shirt', Product.Category.MERCH, True),
            ('Sticker Pack', Product.Category.MERCH, False),
            ('Fest Pass', Product.Category.EVENT_TICKET, False),
            ('Workshop Entry', Product.Category.EVENT_TICKET, False),
            ('Notebook', Product.Category.STATIONERY, False),
            ('Snack Combo', Product.Category.FOOD, False),
            ('Portfolio Review', Product.Category.SERVICE, False),
            ('Tote Bag', Product.Category.MERCH, True),
        ]
        sizes = ['S', 'M', 'L', 'XL']
        colours = ['Black', 'White', 'Navy', 'Maroon']

        created = 0
        for i in range(count):
            base_name, category, with_variants = templates[i % len(templates)]
            name = base_name if i < len(templates) else f"{base_name} {i // len(templates) + 1}"
            price = Decimal(str(random.choice([49, 99, 149, 299, 499, 799])))

            status = Product.Status.ACTIVE
            roll = random.random()
            if roll < 0.05:
                status = Product.Status.DRAFT
            elif roll < 0.1:
                status = Product.Status.PAUSED

            if with_variants:
                options = sizes if category == Product.Category.MERCH and 'Bag' not in base_name else colours
                variants = [{
                    'name': 'Size' if options is sizes else 'Colour',
                    'options': [
                        {
                            'label': label,
                            'sku': f"{store.pk}-{i}-{label}",
                            'stock': random.randint(0, 30),
                            'price': price + 50 if label == 'XL' else None,
                        }
                        for label in options
                    ],
                }]
                create_product(
                    store, name, price,
                    variants=variants,
                    category=category,
                    status=status,
                    max_per_student=random.choice([1, 2, 5]),
                )
            else:
                create_product(
                    store, name, price,
                    stock=random.randint(0, 200),
                    category=category,
                    status=status,
                    requires_delivery=category not in (Product.Category.EVENT_TICKET, Product.Category.SERVICE),
                    max_per_student=random.choice([1, 2, 5, 10]),
                )
            created += 1

        self.stdout.write(f'  Created {created} products for {store.name}')

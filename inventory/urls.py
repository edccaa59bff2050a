"""
URL routing for inventory API endpoints.
"""
from django.urls import path
from . import views

app_name = 'inventory'

urlpatterns = [
    # Stores
    path('stores/', views.StoreListView.as_view(), name='store-list'),

    # Products
    path('products/', views.ProductListView.as_view(), name='product-list'),
    path('products/<int:pk>/', views.ProductDetailView.as_view(), name='product-detail'),
    path(
        'products/<int:pk>/recalculate-stock/',
        views.ProductRecalculateStockView.as_view(),
        name='product-recalculate-stock',
    ),
]

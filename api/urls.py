"""
API URL configuration.
"""
from django.urls import path
from . import views

urlpatterns = [
    # Store management
    path('store/health/', views.HealthCheckView.as_view(), name='health-check'),

    # Key-value operations
    path('buckets/<str:bucket>/keys/', views.KeyListView.as_view(), name='list-keys'),
    path('buckets/<str:bucket>/keys/<path:key>/', views.KeyView.as_view(), name='key'),

    # Tallies
    path('buckets/<str:bucket>/tallies/<path:key>/', views.TallyView.as_view(), name='tally'),

    # Batch operations
    path('buckets/<str:bucket>/batch/', views.BatchOperationView.as_view(), name='batch-operations'),
]

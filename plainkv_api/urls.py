"""
URL configuration for the PlainKV REST API.
"""
from django.urls import include, path

urlpatterns = [
    path('api/', include('api.urls')),
]

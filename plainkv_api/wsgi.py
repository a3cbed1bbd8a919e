"""
WSGI config for the PlainKV REST API.
"""
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'plainkv_api.settings')

application = get_wsgi_application()

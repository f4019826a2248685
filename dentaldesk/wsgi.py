"""
WSGI config for the DentalDesk project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'dentaldesk.settings')

application = get_wsgi_application()

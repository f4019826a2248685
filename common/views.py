from django.db import connection, DatabaseError
from django.http import JsonResponse
from django.views import View
import logging

logger = logging.getLogger(__name__)


class HealthView(View):
    """
    Health check endpoint for load balancers
    """

    def get(self, request):
        """Return health status with a database round trip"""
        try:
            with connection.cursor() as cursor:
                cursor.execute('SELECT 1')
        except DatabaseError as e:
            logger.error(f"Health check database error: {e}")
            return JsonResponse({'status': 'unhealthy', 'service': 'DentalDesk', 'database': 'unavailable'}, status=503)

        return JsonResponse({'status': 'healthy', 'service': 'DentalDesk', 'database': 'ok'})

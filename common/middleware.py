import jwt
import uuid
from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin
import logging

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ['user_id', 'email', 'tenant_id', 'enabled_modules']
MODULE_NAME = 'dental'


class JWTAuthenticationMiddleware(MiddlewareMixin):
    """
    JWT Authentication Middleware for DentalDesk.

    Validates the bearer token issued by the identity service and puts the
    tenant context on the request. All tenants share one database; rows are
    scoped by ``tenant_id``.
    """

    skip_paths = [
        '/admin/',
        '/static/',
        '/media/',
        '/health/',
        '/api/schema/',
        '/api/docs/',
        '/api/redoc/',
    ]

    def process_request(self, request):
        """Process incoming request and validate JWT."""

        if any(request.path.startswith(path) for path in self.skip_paths):
            return None

        auth_header = request.META.get('HTTP_AUTHORIZATION', '')

        if not auth_header.startswith('Bearer '):
            return JsonResponse({
                'success': False,
                'error': 'Missing or invalid Authorization header',
                'detail': 'Expected format: Bearer <token>'
            }, status=401)

        token = auth_header.split(' ', 1)[1]

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except jwt.ExpiredSignatureError:
            return JsonResponse({
                'success': False,
                'error': 'Token expired',
                'detail': 'JWT token has expired'
            }, status=401)
        except jwt.InvalidTokenError as e:
            return JsonResponse({
                'success': False,
                'error': 'Invalid token',
                'detail': str(e)
            }, status=401)

        for claim in REQUIRED_CLAIMS:
            if claim not in payload:
                return JsonResponse({
                    'success': False,
                    'error': 'Invalid JWT token',
                    'detail': f'Missing required field: {claim}'
                }, status=401)

        try:
            tenant_id = uuid.UUID(str(payload['tenant_id']))
        except ValueError:
            return JsonResponse({
                'success': False,
                'error': 'Invalid JWT token',
                'detail': 'tenant_id must be a UUID'
            }, status=401)

        if MODULE_NAME not in (payload.get('enabled_modules') or []):
            return JsonResponse({
                'success': False,
                'error': 'Access denied',
                'detail': 'Dental module not enabled for this tenant'
            }, status=403)

        request.user_id = _as_uuid(payload['user_id'])
        request.email = payload['email']
        request.tenant_id = tenant_id
        request.tenant_slug = payload.get('tenant_slug')
        request.is_super_admin = payload.get('is_super_admin', False)

        logger.debug(f"JWT validated for user {payload['email']} on tenant {tenant_id}")
        return None


def _as_uuid(value):
    """UUID form of a claim, or None when it is not one."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None

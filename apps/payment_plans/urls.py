from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import PaymentPlanViewSet

router = DefaultRouter()
router.register(r'', PaymentPlanViewSet, basename='payment-plan')

urlpatterns = [
    path('', include(router.urls)),
]

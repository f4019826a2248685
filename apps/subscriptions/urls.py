from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import SubscriptionContextView, SubscriptionPlanViewSet

router = DefaultRouter()
router.register(r'plans', SubscriptionPlanViewSet, basename='subscription-plans')

urlpatterns = [
    path('context/', SubscriptionContextView.as_view(), name='subscription-context'),
    path('', include(router.urls)),
]

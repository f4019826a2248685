from django.apps import AppConfig


class PaymentPlansConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.payment_plans'
    label = 'payment_plans'
    verbose_name = 'Payment Plans'

from django.db import models
from django.core.validators import MinValueValidator

from . import entitlements


class SubscriptionPlan(models.Model):
    """Plan tier with its limits. Features come from the tier table."""

    PLAN_TYPE_CHOICES = [
        ('student', 'Student'),
        ('doctor', 'Doctor'),
        ('clinic', 'Clinic'),
    ]

    plan_type = models.CharField(max_length=20, choices=PLAN_TYPE_CHOICES, unique=True)
    name = models.CharField(max_length=100)
    patient_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum active patients; empty means unlimited"
    )
    user_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum users; empty means unlimited"
    )
    trial_days = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'subscription_plans'
        verbose_name = 'Subscription Plan'
        verbose_name_plural = 'Subscription Plans'
        ordering = ['plan_type']

    def __str__(self):
        return self.name

    @property
    def features(self):
        return entitlements.feature_map(self.plan_type)

    @classmethod
    def with_defaults(cls, plan_type):
        """Unsaved plan carrying the tier's default limits and trial."""
        plan = entitlements.PlanType(plan_type)
        patient_limit, user_limit = entitlements.DEFAULT_LIMITS[plan]
        return cls(
            plan_type=plan.value,
            name=plan.value.title(),
            patient_limit=patient_limit,
            user_limit=user_limit,
            trial_days=entitlements.DEFAULT_TRIAL_DAYS[plan],
        )


class Organization(models.Model):
    """
    Clinic organization: one per tenant.

    Holds the last subscription snapshot from the billing provider and the
    usage counters the plan limits govern.
    """

    STATUS_CHOICES = [
        ('trial', 'Trial'),
        ('active', 'Active'),
        ('expired', 'Expired'),
    ]

    tenant_id = models.UUIDField(unique=True, db_index=True)
    name = models.CharField(max_length=200)
    plan = models.ForeignKey(
        SubscriptionPlan,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='organizations'
    )
    subscription_status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='trial')
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    subscription_end_date = models.DateTimeField(null=True, blank=True)
    provider_customer_id = models.CharField(max_length=100, blank=True, null=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    current_patient_count = models.PositiveIntegerField(default=0)
    current_user_count = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)]
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'organizations'
        verbose_name = 'Organization'
        verbose_name_plural = 'Organizations'
        ordering = ['name']

    def __str__(self):
        return self.name

    def to_snapshot(self):
        return entitlements.SubscriptionSnapshot(
            plan_type=entitlements.PlanType(self.plan.plan_type) if self.plan_id else None,
            status=entitlements.SubscriptionStatus(self.subscription_status),
            period_end=self.subscription_end_date,
            trial_end=self.trial_ends_at,
        )

    def to_usage(self):
        return entitlements.Usage(
            patient_count=self.current_patient_count,
            user_count=self.current_user_count,
        )

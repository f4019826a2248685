"""
Plan entitlements.

Maps an organization's plan tier, subscription snapshot and usage counts to
feature flags and limit checks. Pure functions; unknown plans and features
resolve to "not allowed" instead of raising.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
import math

SECONDS_PER_DAY = 24 * 60 * 60

# Stands in for "use the tier default"; None already means unlimited
TIER_DEFAULT = object()


class PlanType(str, Enum):
    STUDENT = 'student'
    DOCTOR = 'doctor'
    CLINIC = 'clinic'


class SubscriptionStatus(str, Enum):
    TRIAL = 'trial'
    ACTIVE = 'active'
    EXPIRED = 'expired'


class Feature(str, Enum):
    DASHBOARD = 'dashboard'
    PATIENTS = 'patients'
    APPOINTMENTS = 'appointments'
    FINANCIALS = 'financials'
    EXPENSES = 'expenses'
    LAB_WORK = 'lab_work'
    SERVICES = 'services'
    INVENTORY = 'inventory'
    INSURANCE_CLAIMS = 'insurance_claims'
    USERS = 'users'
    SETTINGS = 'settings'
    REPORTS = 'reports'
    DOCUMENTS = 'documents'
    AUDIT_LOGS = 'audit_logs'


_STUDENT_FEATURES = frozenset({
    Feature.DASHBOARD,
    Feature.PATIENTS,
    Feature.APPOINTMENTS,
    Feature.SERVICES,
    Feature.SETTINGS,
    Feature.DOCUMENTS,
})

_DOCTOR_FEATURES = _STUDENT_FEATURES | {
    Feature.FINANCIALS,
    Feature.REPORTS,
    Feature.LAB_WORK,
}

TIER_FEATURES = {
    PlanType.STUDENT: _STUDENT_FEATURES,
    PlanType.DOCTOR: frozenset(_DOCTOR_FEATURES),
    PlanType.CLINIC: frozenset(Feature),
}

# (patient limit, user limit); None is unlimited
DEFAULT_LIMITS = {
    PlanType.STUDENT: (50, 1),
    PlanType.DOCTOR: (200, 2),
    PlanType.CLINIC: (None, None),
}

DEFAULT_TRIAL_DAYS = {
    PlanType.STUDENT: 0,
    PlanType.DOCTOR: 0,
    PlanType.CLINIC: 15,
}


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def is_feature_enabled(plan, feature) -> bool:
    """Tier lookup; unknown plan or feature is simply not enabled."""
    plan = _coerce(PlanType, plan)
    feature = _coerce(Feature, feature)
    if plan is None or feature is None:
        return False
    return feature in TIER_FEATURES[plan]


def is_within_limit(usage_count, limit) -> bool:
    """True while one more unit fits; ``None`` means unlimited."""
    if limit is None:
        return True
    return usage_count < limit


def remaining(usage_count, limit) -> Optional[int]:
    if limit is None:
        return None
    return max(0, limit - usage_count)


def limit_message(kind, usage_count, limit):
    return f"{kind} limit reached ({usage_count}/{limit}). Please upgrade your plan."


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """What the billing provider last told us about a subscription."""
    plan_type: Optional[PlanType]
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class ResolvedStatus:
    is_active: bool
    is_trial: bool
    is_expired: bool
    days_remaining: Optional[int]

    def as_dict(self):
        return {
            'is_active': self.is_active,
            'is_trial': self.is_trial,
            'is_expired': self.is_expired,
            'days_remaining': self.days_remaining,
        }


EXPIRED = ResolvedStatus(is_active=False, is_trial=False, is_expired=True, days_remaining=None)


def _days_until(now: datetime, end: datetime) -> int:
    return max(0, math.ceil((end - now).total_seconds() / SECONDS_PER_DAY))


def resolve_status(snapshot: SubscriptionSnapshot, now: datetime) -> ResolvedStatus:
    """
    Collapse a snapshot into exactly one governing state.

    Expired overrides trial, trial overrides active. A trial whose end has
    passed is expired.
    """
    trial_lapsed = (
        snapshot.status is SubscriptionStatus.TRIAL
        and snapshot.trial_end is not None
        and now > snapshot.trial_end
    )
    is_expired = (
        snapshot.status is SubscriptionStatus.EXPIRED
        or (snapshot.period_end is not None and now > snapshot.period_end)
        or trial_lapsed
    )
    is_trial = (
        not is_expired
        and snapshot.trial_end is not None
        and now <= snapshot.trial_end
    )

    if is_expired:
        days_remaining = 0 if snapshot.period_end or snapshot.trial_end else None
    elif is_trial:
        days_remaining = _days_until(now, snapshot.trial_end)
    elif snapshot.period_end is not None:
        days_remaining = _days_until(now, snapshot.period_end)
    else:
        days_remaining = None

    return ResolvedStatus(
        is_active=not is_expired and not is_trial,
        is_trial=is_trial,
        is_expired=is_expired,
        days_remaining=days_remaining,
    )


@dataclass(frozen=True)
class Usage:
    patient_count: int = 0
    user_count: int = 1


@dataclass(frozen=True)
class Entitlements:
    plan_type: Optional[PlanType]
    status: ResolvedStatus
    features: Dict[str, bool] = field(default_factory=dict)
    patient_limit: Optional[int] = 0
    user_limit: Optional[int] = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def can_add_patient(self) -> bool:
        return not self.status.is_expired and is_within_limit(self.usage.patient_count, self.patient_limit)

    @property
    def can_add_user(self) -> bool:
        return not self.status.is_expired and is_within_limit(self.usage.user_count, self.user_limit)

    def has_feature(self, feature) -> bool:
        feature = _coerce(Feature, feature)
        if feature is None:
            return False
        return self.features.get(feature.value, False)

    def patient_limit_message(self):
        if self.status.is_expired:
            return "Subscription expired. Please renew your plan."
        return limit_message('Patient', self.usage.patient_count, self.patient_limit)

    def user_limit_message(self):
        if self.status.is_expired:
            return "Subscription expired. Please renew your plan."
        return limit_message('User', self.usage.user_count, self.user_limit)

    def as_dict(self):
        return {
            'plan_type': self.plan_type.value if self.plan_type else None,
            'status': self.status.as_dict(),
            'features': dict(self.features),
            'limits': {
                'patient_limit': self.patient_limit,
                'user_limit': self.user_limit,
                'current_patient_count': self.usage.patient_count,
                'current_user_count': self.usage.user_count,
                'patients_remaining': remaining(self.usage.patient_count, self.patient_limit),
                'users_remaining': remaining(self.usage.user_count, self.user_limit),
            },
            'can_add_patient': self.can_add_patient,
            'can_add_user': self.can_add_user,
        }


def feature_map(plan, enabled=True) -> Dict[str, bool]:
    return {f.value: bool(enabled) and is_feature_enabled(plan, f) for f in Feature}


def build_entitlements(snapshot: Optional[SubscriptionSnapshot], usage: Usage, now: datetime,
                       patient_limit=TIER_DEFAULT, user_limit=TIER_DEFAULT) -> Entitlements:
    """
    Resolve everything a route guard needs in one value.

    Without a snapshot or plan the result is closed: expired, no features,
    zero limits. Limits default to the tier's defaults.
    """
    plan = _coerce(PlanType, snapshot.plan_type) if snapshot is not None else None
    if plan is None:
        return Entitlements(
            plan_type=None,
            status=EXPIRED,
            features=feature_map(None, enabled=False),
            patient_limit=0,
            user_limit=0,
            usage=usage,
        )

    status = resolve_status(snapshot, now)
    default_patients, default_users = DEFAULT_LIMITS[plan]
    return Entitlements(
        plan_type=plan,
        status=status,
        features=feature_map(plan, enabled=not status.is_expired),
        patient_limit=default_patients if patient_limit is TIER_DEFAULT else patient_limit,
        user_limit=default_users if user_limit is TIER_DEFAULT else user_limit,
        usage=usage,
    )

from django.db import models
from django.core.validators import RegexValidator
import datetime

from common.mixins import TenantMixin


class PatientProfile(TenantMixin):
    """
    Clinic patient.

    Active patients count toward the organization's plan patient limit.
    """
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('inactive', 'Inactive'),
    ]

    phone_regex = RegexValidator(
        regex=r'^\+?1?\d{9,15}$',
        message="Phone number must be entered in the format: '+999999999'. Up to 15 digits allowed."
    )

    patient_id = models.CharField(
        max_length=20,
        editable=False,
        help_text="Patient number, unique per tenant (e.g., PAT20250001)"
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    date_of_birth = models.DateField(null=True, blank=True)
    mobile_primary = models.CharField(
        validators=[phone_regex],
        max_length=17,
        blank=True,
        null=True
    )
    email = models.EmailField(blank=True, null=True)
    notes = models.TextField(blank=True, null=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')

    created_by_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patient_profiles'
        verbose_name = 'Patient Profile'
        verbose_name_plural = 'Patient Profiles'
        ordering = ['-created_at']
        unique_together = ['tenant_id', 'patient_id']
        indexes = [
            models.Index(fields=['tenant_id', 'status'], name='patient_tenant_status_idx'),
            models.Index(fields=['last_name', 'first_name'], name='patient_name_idx'),
        ]

    def __str__(self):
        return f"{self.full_name} ({self.patient_id})"

    def save(self, *args, **kwargs):
        if not self.patient_id:
            self.patient_id = self.generate_patient_id(self.tenant_id)
        super().save(*args, **kwargs)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def generate_patient_id(cls, tenant_id):
        """Generate patient number: PAT{year}{seq:04d}, sequential per tenant"""
        year = datetime.datetime.now().year
        last = cls.objects.filter(
            tenant_id=tenant_id,
            patient_id__startswith=f'PAT{year}'
        ).order_by('-patient_id').first()

        if last:
            try:
                num = int(last.patient_id[len(f'PAT{year}'):]) + 1
            except ValueError:
                num = 1
        else:
            num = 1

        return f'PAT{year}{num:04d}'

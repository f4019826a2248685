from django.contrib import admin

from .models import PatientProfile


@admin.register(PatientProfile)
class PatientProfileAdmin(admin.ModelAdmin):
    list_display = ['patient_id', 'full_name', 'mobile_primary', 'email', 'status', 'tenant_id', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['patient_id', 'first_name', 'last_name', 'mobile_primary', 'email']
    readonly_fields = ['tenant_id', 'patient_id', 'created_by_id', 'created_at', 'updated_at']
    ordering = ['-created_at']

    fieldsets = (
        ('Patient Identification', {
            'fields': ('tenant_id', 'patient_id', 'status')
        }),
        ('Personal Information', {
            'fields': ('first_name', 'last_name', 'date_of_birth')
        }),
        ('Contact Information', {
            'fields': ('mobile_primary', 'email')
        }),
        ('Notes', {
            'fields': ('notes',)
        }),
        ('Audit', {
            'fields': ('created_by_id', 'created_at', 'updated_at')
        }),
    )

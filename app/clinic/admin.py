"""
Clinic admin configuration.
"""

from django.contrib import admin

from clinic.models import (
    Appointment,
    ClinicService,
    ClinicSettings,
    Doctor,
    Patient,
    Tenant,
)


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ["id", "name", "slug", "billing_status", "created_at"]
    list_filter = ["billing_status"]
    search_fields = ["name", "slug", "contact_email"]
    readonly_fields = ["billing_status", "created_at", "updated_at"]


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ["id", "first_name", "last_name", "email", "tenant"]
    search_fields = ["first_name", "last_name", "email"]
    list_filter = ["tenant"]


@admin.register(Doctor)
class DoctorAdmin(admin.ModelAdmin):
    list_display = ["id", "first_name", "last_name", "email", "tenant"]
    search_fields = ["first_name", "last_name", "email"]
    list_filter = ["tenant"]


@admin.register(ClinicService)
class ClinicServiceAdmin(admin.ModelAdmin):
    list_display = ["id", "name", "duration_minutes", "tenant"]
    list_filter = ["tenant"]


@admin.register(ClinicSettings)
class ClinicSettingsAdmin(admin.ModelAdmin):
    list_display = [
        "tenant",
        "virtual_consultation_fee",
        "display_currency",
        "slot_duration_minutes",
        "timezone",
    ]


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    """
    Appointments flagged requires_review had an unparseable slot and were
    booked at a placeholder time.
    """

    list_display = [
        "id",
        "tenant",
        "patient",
        "doctor",
        "start_time",
        "status",
        "appointment_type",
        "requires_review",
    ]
    list_filter = ["status", "appointment_type", "requires_review"]
    search_fields = ["patient__last_name", "doctor__last_name"]
    ordering = ["-start_time"]

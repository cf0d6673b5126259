"""
Clinic directory models.

Tenant is the billing customer (one clinic). Everything else hangs off a
tenant: the people, the bookable services, per-clinic settings and the
appointments created when a consultation is paid.

Usage:
    from clinic.models import Appointment, ClinicSettings, Tenant

    tenant = Tenant.objects.create(name="Northside Clinic", slug="northside")
    ClinicSettings.objects.create(
        tenant=tenant,
        virtual_consultation_fee=Decimal("45.00"),
        timezone="America/New_York",
    )
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel


class TenantBillingStatus(models.TextChoices):
    """
    Billing standing of a clinic, mirrored from its subscription.

    The subscription state machine owns the transitions; this field is a
    denormalized copy for cheap access checks.
    """

    PENDING = "PENDING", "Pending"
    ACTIVE = "ACTIVE", "Active"
    PAST_DUE = "PAST_DUE", "Past Due"
    SUSPENDED = "SUSPENDED", "Suspended"
    CANCELED = "CANCELED", "Canceled"


class AppointmentStatus(models.TextChoices):
    REQUESTED = "REQUESTED", "Requested"
    CONFIRMED = "CONFIRMED", "Confirmed"
    CANCELLED = "CANCELLED", "Cancelled"
    COMPLETED = "COMPLETED", "Completed"


class AppointmentType(models.TextChoices):
    IN_PERSON = "IN_PERSON", "In Person"
    VIRTUAL_CONSULTATION = "VIRTUAL_CONSULTATION", "Virtual Consultation"


class Tenant(BaseModel):
    """
    A clinic using the platform.

    Fields:
        name: Display name
        slug: URL-safe unique identifier
        contact_email: Billing contact
        billing_status: Mirrored subscription standing
    """

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    contact_email = models.EmailField(blank=True)
    billing_status = models.CharField(
        max_length=20,
        choices=TenantBillingStatus.choices,
        default=TenantBillingStatus.PENDING,
        db_index=True,
        help_text="Mirrored from the clinic's subscription",
    )

    class Meta:
        db_table = "clinic_tenants"
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Patient(BaseModel):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="patients")
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=30, blank=True)

    class Meta:
        db_table = "clinic_patients"
        ordering = ["last_name", "first_name"]

    def __str__(self) -> str:
        return self.full_name

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Doctor(BaseModel):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="doctors")
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    email = models.EmailField(blank=True)

    class Meta:
        db_table = "clinic_doctors"
        ordering = ["last_name", "first_name"]

    def __str__(self) -> str:
        return f"Dr. {self.last_name}"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ClinicService(BaseModel):
    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="services")
    name = models.CharField(max_length=200)
    duration_minutes = models.PositiveIntegerField(default=30)

    class Meta:
        db_table = "clinic_services"
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class ClinicSettings(BaseModel):
    """
    Per-clinic configuration read by the payment flow.

    Fields:
        virtual_consultation_fee: Price of a paid virtual consultation;
            orders are refused while this is unset or not positive
        display_currency: Currency shown to patients (settlement is
            always BILLING_SETTLEMENT_CURRENCY)
        slot_duration_minutes: Length of a booked appointment
        virtual_meeting_link: Link sent in the confirmation email
        timezone: IANA zone used to interpret naive slot times
    """

    tenant = models.OneToOneField(
        Tenant, on_delete=models.CASCADE, related_name="clinic_settings"
    )
    virtual_consultation_fee = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True
    )
    display_currency = models.CharField(max_length=3, default="USD")
    slot_duration_minutes = models.PositiveIntegerField(default=30)
    virtual_meeting_link = models.URLField(blank=True)
    timezone = models.CharField(max_length=64, default="UTC")

    class Meta:
        db_table = "clinic_settings"
        verbose_name = "Clinic Settings"
        verbose_name_plural = "Clinic Settings"

    def __str__(self) -> str:
        return f"ClinicSettings({self.tenant_id})"


class Appointment(BaseModel):
    """
    A booked visit.

    Paid virtual consultations are created by the billing engine after a
    successful capture; requires_review is set when the booked slot could
    not be parsed and a placeholder time was used.
    """

    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, related_name="appointments"
    )
    patient = models.ForeignKey(
        Patient, on_delete=models.PROTECT, related_name="appointments"
    )
    doctor = models.ForeignKey(
        Doctor, on_delete=models.PROTECT, related_name="appointments"
    )
    service = models.ForeignKey(
        ClinicService,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="appointments",
    )
    start_time = models.DateTimeField(db_index=True)
    end_time = models.DateTimeField()
    status = models.CharField(
        max_length=20,
        choices=AppointmentStatus.choices,
        default=AppointmentStatus.REQUESTED,
    )
    appointment_type = models.CharField(
        max_length=30,
        choices=AppointmentType.choices,
        default=AppointmentType.IN_PERSON,
    )
    payment_amount = models.DecimalField(
        max_digits=12, decimal_places=2, null=True, blank=True
    )
    payment_currency = models.CharField(max_length=3, blank=True)
    payment_method = models.CharField(max_length=30, blank=True)
    meeting_link = models.URLField(blank=True)
    notes = models.TextField(blank=True)
    requires_review = models.BooleanField(
        default=False,
        help_text="Slot time was a placeholder and must be confirmed by staff",
    )

    class Meta:
        db_table = "clinic_appointments"
        ordering = ["-start_time"]
        indexes = [
            models.Index(
                fields=["tenant", "start_time"], name="clinic_appo_tenant__3f1c2a_idx"
            ),
            models.Index(
                fields=["doctor", "start_time"], name="clinic_appo_doctor__8b7e4d_idx"
            ),
        ]

    def __str__(self) -> str:
        return f"Appointment({self.pk}, {self.start_time:%Y-%m-%d %H:%M})"

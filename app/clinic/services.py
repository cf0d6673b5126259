"""
Directory lookups and appointment writes used by the billing engine.

Services:
    DirectoryService: Tenant-scoped lookups, clinic settings, appointment
        creation and tenant billing status updates

Design Principles:
    - Services are stateless (use class methods)
    - Lookups raise NotFoundError; callers never receive None for a
      required entity
    - Every lookup is scoped to the tenant, so an id from another clinic
      is "not found"

Usage:
    from clinic.services import DirectoryService

    patient = DirectoryService.get_patient(tenant_id, patient_id)
    settings = DirectoryService.get_clinic_settings(tenant_id)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.exceptions import NotFoundError
from core.services import BaseService

from clinic.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    ClinicService,
    ClinicSettings,
    Doctor,
    Patient,
    Tenant,
)

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

logger = logging.getLogger(__name__)


class DirectoryService(BaseService):
    """
    Read and write access to the clinic directory.

    Methods:
        get_tenant: Tenant by id
        get_patient / get_doctor / get_service: Tenant-scoped lookups
        get_clinic_settings: Settings row (created with defaults if absent)
        create_virtual_consultation: Confirmed, paid appointment
        set_billing_status: Mirror subscription state onto the tenant
    """

    @classmethod
    def get_tenant(cls, tenant_id) -> Tenant:
        tenant = Tenant.objects.filter(pk=tenant_id).first()
        if tenant is None:
            raise NotFoundError(
                f"Tenant {tenant_id} not found",
                error_code="TENANT_NOT_FOUND",
                details={"tenant_id": str(tenant_id)},
            )
        return tenant

    @classmethod
    def get_patient(cls, tenant_id, patient_id) -> Patient:
        patient = Patient.objects.filter(pk=patient_id, tenant_id=tenant_id).first()
        if patient is None:
            raise NotFoundError(
                f"Patient {patient_id} not found",
                error_code="PATIENT_NOT_FOUND",
                details={"tenant_id": str(tenant_id), "patient_id": str(patient_id)},
            )
        return patient

    @classmethod
    def get_doctor(cls, tenant_id, doctor_id) -> Doctor:
        doctor = Doctor.objects.filter(pk=doctor_id, tenant_id=tenant_id).first()
        if doctor is None:
            raise NotFoundError(
                f"Doctor {doctor_id} not found",
                error_code="DOCTOR_NOT_FOUND",
                details={"tenant_id": str(tenant_id), "doctor_id": str(doctor_id)},
            )
        return doctor

    @classmethod
    def get_service(cls, tenant_id, service_id) -> ClinicService:
        service = ClinicService.objects.filter(
            pk=service_id, tenant_id=tenant_id
        ).first()
        if service is None:
            raise NotFoundError(
                f"Service {service_id} not found",
                error_code="SERVICE_NOT_FOUND",
                details={"tenant_id": str(tenant_id), "service_id": str(service_id)},
            )
        return service

    @classmethod
    def get_clinic_settings(cls, tenant_id) -> ClinicSettings:
        """
        Settings for a clinic.

        A clinic without a settings row gets one with model defaults, which
        leaves the consultation fee unset.
        """
        clinic_settings, created = ClinicSettings.objects.get_or_create(
            tenant_id=tenant_id
        )
        if created:
            cls.get_logger().info(
                "Created default clinic settings",
                extra={"tenant_id": str(tenant_id)},
            )
        return clinic_settings

    @classmethod
    def create_virtual_consultation(
        cls,
        *,
        tenant_id,
        patient_id,
        doctor_id,
        service_id,
        start_time: datetime,
        end_time: datetime,
        amount: Decimal,
        currency: str,
        meeting_link: str = "",
        notes: str = "",
        requires_review: bool = False,
    ) -> Appointment:
        """Create a confirmed, paid virtual consultation."""
        appointment = Appointment.objects.create(
            tenant_id=tenant_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            service_id=service_id,
            start_time=start_time,
            end_time=end_time,
            status=AppointmentStatus.CONFIRMED,
            appointment_type=AppointmentType.VIRTUAL_CONSULTATION,
            payment_amount=amount,
            payment_currency=currency,
            payment_method="PAYPAL",
            meeting_link=meeting_link,
            notes=notes,
            requires_review=requires_review,
        )
        logger.info(
            "Virtual consultation booked",
            extra={
                "appointment_id": appointment.pk,
                "tenant_id": str(tenant_id),
                "requires_review": requires_review,
            },
        )
        return appointment

    @classmethod
    def set_billing_status(cls, tenant_id, billing_status: str) -> str | None:
        """
        Update the tenant's mirrored billing status.

        Returns:
            The previous status, or None if the tenant does not exist
        """
        tenant = Tenant.objects.filter(pk=tenant_id).first()
        if tenant is None:
            logger.warning(
                "Billing status update for unknown tenant",
                extra={"tenant_id": str(tenant_id), "billing_status": billing_status},
            )
            return None
        previous = tenant.billing_status
        if previous != billing_status:
            tenant.billing_status = billing_status
            tenant.save(update_fields=["billing_status", "updated_at"])
        return previous

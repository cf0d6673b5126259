"""
Clinic directory: tenants, patients, doctors, services and appointments.

The billing engine reads this app through DirectoryService and writes
Appointment rows when a consultation payment is fulfilled.

Key components:
    - models.py: Tenant, Patient, Doctor, ClinicService, ClinicSettings,
      Appointment
    - services.py: DirectoryService (lookups used by billing)
    - consumers.py: StaffNotificationConsumer (staff dashboard websocket)
"""

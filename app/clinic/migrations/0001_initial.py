"""
Create the clinic directory tables.
"""

from django.db import migrations, models
import django.db.models.deletion


def _timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


def _id():
    return (
        "id",
        models.BigAutoField(
            auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
        ),
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Tenant",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("slug", models.SlugField(max_length=100, unique=True)),
                ("contact_email", models.EmailField(blank=True, max_length=254)),
                (
                    "billing_status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("ACTIVE", "Active"),
                            ("PAST_DUE", "Past Due"),
                            ("SUSPENDED", "Suspended"),
                            ("CANCELED", "Canceled"),
                        ],
                        db_index=True,
                        default="PENDING",
                        help_text="Mirrored from the clinic's subscription",
                        max_length=20,
                    ),
                ),
            ],
            options={"db_table": "clinic_tenants", "ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="Patient",
            fields=[
                _id(),
                *_timestamps(),
                ("first_name", models.CharField(max_length=100)),
                ("last_name", models.CharField(max_length=100)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("phone", models.CharField(blank=True, max_length=30)),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="patients",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "clinic_patients",
                "ordering": ["last_name", "first_name"],
            },
        ),
        migrations.CreateModel(
            name="Doctor",
            fields=[
                _id(),
                *_timestamps(),
                ("first_name", models.CharField(max_length=100)),
                ("last_name", models.CharField(max_length=100)),
                ("email", models.EmailField(blank=True, max_length=254)),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="doctors",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "clinic_doctors",
                "ordering": ["last_name", "first_name"],
            },
        ),
        migrations.CreateModel(
            name="ClinicService",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("duration_minutes", models.PositiveIntegerField(default=30)),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="services",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={"db_table": "clinic_services", "ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="ClinicSettings",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "virtual_consultation_fee",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=12, null=True
                    ),
                ),
                ("display_currency", models.CharField(default="USD", max_length=3)),
                ("slot_duration_minutes", models.PositiveIntegerField(default=30)),
                ("virtual_meeting_link", models.URLField(blank=True)),
                ("timezone", models.CharField(default="UTC", max_length=64)),
                (
                    "tenant",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="clinic_settings",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "clinic_settings",
                "verbose_name": "Clinic Settings",
                "verbose_name_plural": "Clinic Settings",
            },
        ),
        migrations.CreateModel(
            name="Appointment",
            fields=[
                _id(),
                *_timestamps(),
                ("start_time", models.DateTimeField(db_index=True)),
                ("end_time", models.DateTimeField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("REQUESTED", "Requested"),
                            ("CONFIRMED", "Confirmed"),
                            ("CANCELLED", "Cancelled"),
                            ("COMPLETED", "Completed"),
                        ],
                        default="REQUESTED",
                        max_length=20,
                    ),
                ),
                (
                    "appointment_type",
                    models.CharField(
                        choices=[
                            ("IN_PERSON", "In Person"),
                            ("VIRTUAL_CONSULTATION", "Virtual Consultation"),
                        ],
                        default="IN_PERSON",
                        max_length=30,
                    ),
                ),
                (
                    "payment_amount",
                    models.DecimalField(
                        blank=True, decimal_places=2, max_digits=12, null=True
                    ),
                ),
                ("payment_currency", models.CharField(blank=True, max_length=3)),
                ("payment_method", models.CharField(blank=True, max_length=30)),
                ("meeting_link", models.URLField(blank=True)),
                ("notes", models.TextField(blank=True)),
                (
                    "requires_review",
                    models.BooleanField(
                        default=False,
                        help_text="Slot time was a placeholder and must be confirmed by staff",
                    ),
                ),
                (
                    "doctor",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to="clinic.doctor",
                    ),
                ),
                (
                    "patient",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to="clinic.patient",
                    ),
                ),
                (
                    "service",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to="clinic.clinicservice",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="appointments",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "clinic_appointments",
                "ordering": ["-start_time"],
                "indexes": [
                    models.Index(
                        fields=["tenant", "start_time"],
                        name="clinic_appo_tenant__3f1c2a_idx",
                    ),
                    models.Index(
                        fields=["doctor", "start_time"],
                        name="clinic_appo_doctor__8b7e4d_idx",
                    ),
                ],
            },
        ),
    ]

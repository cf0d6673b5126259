"""
Create the billing tables.
"""

import uuid

from django.db import migrations, models
import django.db.models.deletion
import django_fsm


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


def _uuid_pk():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier (UUID v4)",
            primary_key=True,
            serialize=False,
        ),
    )


def _version():
    return (
        "version",
        models.PositiveIntegerField(
            default=1,
            help_text="Version for optimistic locking - incremented on each save",
        ),
    )


PLAN_TIER_CHOICES = [
    ("BASIC", "Basic"),
    ("PROFESSIONAL", "Professional"),
    ("ENTERPRISE", "Enterprise"),
    ("CUSTOM", "Custom"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("clinic", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentOrder",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                _version(),
                (
                    "order_id",
                    models.CharField(
                        help_text="Gateway order id", max_length=64, unique=True
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        db_index=True,
                        default="PENDING",
                        help_text="Current state of the order (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("VIRTUAL_CONSULTATION", "Virtual Consultation")],
                        default="VIRTUAL_CONSULTATION",
                        max_length=30,
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Charged amount; immutable once the order is completed",
                        max_digits=12,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="USD", help_text="ISO 4217 currency code", max_length=3
                    ),
                ),
                (
                    "slot_start",
                    models.CharField(
                        help_text="Requested slot start as submitted (ISO 8601)",
                        max_length=64,
                    ),
                ),
                ("notes", models.TextField(blank=True)),
                ("capture_id", models.CharField(blank=True, max_length=64)),
                ("payer_email", models.EmailField(blank=True, max_length=254)),
                ("payer_name", models.CharField(blank=True, max_length=200)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True)),
                ("raw_payload", models.JSONField(blank=True, default=dict)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "appointment",
                    models.OneToOneField(
                        blank=True,
                        help_text="Appointment booked for this payment (set once)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_order",
                        to="clinic.appointment",
                    ),
                ),
                (
                    "doctor",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_orders",
                        to="clinic.doctor",
                    ),
                ),
                (
                    "patient",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_orders",
                        to="clinic.patient",
                    ),
                ),
                (
                    "service",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_orders",
                        to="clinic.clinicservice",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_orders",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment_orders",
                "ordering": ["-created_at"],
                "verbose_name": "Payment Order",
                "verbose_name_plural": "Payment Orders",
                "indexes": [
                    models.Index(
                        fields=["tenant", "status"], name="billing_ord_tenant_st_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="billing_payment_order_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                _version(),
                (
                    "provider_subscription_id",
                    models.CharField(
                        help_text="Gateway subscription id", max_length=64, unique=True
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("PENDING_APPROVAL", "Pending Approval"),
                            ("ACTIVE", "Active"),
                            ("PAST_DUE", "Past Due"),
                            ("SUSPENDED", "Suspended"),
                            ("CANCELED", "Canceled"),
                        ],
                        db_index=True,
                        default="PENDING_APPROVAL",
                        help_text="Current state of the subscription (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "plan_tier",
                    models.CharField(choices=PLAN_TIER_CHOICES, max_length=20),
                ),
                (
                    "billing_cycle",
                    models.CharField(
                        choices=[("MONTHLY", "Monthly"), ("ANNUAL", "Annual")],
                        default="MONTHLY",
                        max_length=10,
                    ),
                ),
                ("provider_plan_id", models.CharField(blank=True, max_length=64)),
                ("approval_url", models.URLField(blank=True, max_length=500)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("renewal_date", models.DateTimeField(blank=True, null=True)),
                (
                    "pending_plan_tier",
                    models.CharField(
                        blank=True,
                        choices=PLAN_TIER_CHOICES,
                        help_text="Tier that takes effect on pending_plan_effective_date",
                        max_length=20,
                        null=True,
                    ),
                ),
                (
                    "pending_plan_effective_date",
                    models.DateTimeField(blank=True, null=True),
                ),
                (
                    "cancellation_date",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the cancellation was requested",
                        null=True,
                    ),
                ),
                (
                    "cancellation_effective_date",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When the scheduled cancellation is applied",
                        null=True,
                    ),
                ),
                ("cancellation_reason", models.TextField(blank=True)),
                ("payment_method_mask", models.CharField(blank=True, max_length=32)),
                ("payment_method_type", models.CharField(blank=True, max_length=32)),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_subscriptions",
                "ordering": ["-created_at"],
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "indexes": [
                    models.Index(
                        fields=["tenant", "status"], name="billing_sub_tenant_st_idx"
                    ),
                    models.Index(
                        fields=["pending_plan_effective_date"],
                        name="billing_sub_pending_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("pending_plan_effective_date__isnull", True),
                                ("pending_plan_tier__isnull", True),
                            ),
                            models.Q(
                                ("pending_plan_effective_date__isnull", False),
                                ("pending_plan_tier__isnull", False),
                            ),
                            _connector="OR",
                        ),
                        name="billing_subscription_pending_pair",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "transaction_id",
                    models.CharField(help_text="Gateway sale id", max_length=64, unique=True),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("status", models.CharField(max_length=32)),
                ("event_type", models.CharField(max_length=100)),
                ("raw_payload", models.JSONField(blank=True, default=dict)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_transactions",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_payment_transactions",
                "ordering": ["-created_at"],
                "verbose_name": "Payment Transaction",
                "verbose_name_plural": "Payment Transactions",
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "provider_event_id",
                    models.CharField(
                        help_text="Gateway event id - unique constraint for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("resource_type", models.CharField(blank=True, max_length=50)),
                ("payload", models.JSONField(help_text="Full webhook body from the gateway")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PROCESSING", "Processing"),
                            ("PROCESSED", "Processed"),
                            ("FAILED", "Failed"),
                        ],
                        db_index=True,
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
            ],
            options={
                "db_table": "billing_webhook_events",
                "ordering": ["-created_at"],
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"], name="billing_whk_status_idx"
                    ),
                    models.Index(
                        fields=["status", "retry_count"], name="billing_whk_retry_idx"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingAuditLogEntry",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                *_timestamps(),
                ("action", models.CharField(db_index=True, max_length=64)),
                ("entity_type", models.CharField(blank=True, max_length=64)),
                ("entity_id", models.CharField(blank=True, db_index=True, max_length=64)),
                ("actor", models.CharField(default="system", max_length=64)),
                ("old_value", models.CharField(blank=True, max_length=255)),
                ("new_value", models.CharField(blank=True, max_length=255)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("success", models.BooleanField(default=True)),
                ("error_message", models.TextField(blank=True)),
                (
                    "tenant",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billing_audit_entries",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_audit_log",
                "ordering": ["-created_at"],
                "verbose_name": "Billing Audit Log Entry",
                "verbose_name_plural": "Billing Audit Log",
                "indexes": [
                    models.Index(
                        fields=["tenant", "created_at"], name="billing_aud_tenant_idx"
                    ),
                    models.Index(
                        fields=["entity_type", "entity_id"], name="billing_aud_entity_idx"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="TenantGatewayCredentials",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                *_timestamps(),
                ("client_id", models.CharField(max_length=255)),
                ("client_secret", models.CharField(max_length=255)),
                (
                    "environment",
                    models.CharField(
                        choices=[("sandbox", "Sandbox"), ("live", "Live")],
                        default="sandbox",
                        max_length=10,
                    ),
                ),
                ("webhook_id", models.CharField(blank=True, max_length=64)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "tenant",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="gateway_credentials",
                        to="clinic.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_tenant_gateway_credentials",
                "verbose_name": "Tenant Gateway Credentials",
                "verbose_name_plural": "Tenant Gateway Credentials",
            },
        ),
    ]

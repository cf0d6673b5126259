"""
DRF views for the billing app.

This module provides API views for:
- Consultation payment orders (create, capture)
- Clinic subscriptions (create, detail, plan change, cancellation)
- The plan tier catalog

Related files:
    - services/: OrderPaymentProcessor, SubscriptionLifecycleManager
    - serializers.py: Request/response serializers
    - urls.py: URL routing
    - webhooks/views.py: PayPal webhook endpoint (plain Django view)

Endpoints:
    GET  /api/v1/billing/plans/ - List plan tiers
    POST /api/v1/billing/orders/ - Create consultation payment order
    POST /api/v1/billing/orders/{order_id}/capture/ - Capture approved order
    POST /api/v1/billing/subscriptions/ - Start a subscription
    GET  /api/v1/billing/subscriptions/{id}/ - Subscription detail
    POST /api/v1/billing/subscriptions/{id}/plan-change/ - Change plan
    POST /api/v1/billing/subscriptions/{id}/cancel/ - Schedule cancellation

Security:
    - All endpoints require authentication except the plan list
    - Application errors are mapped to HTTP statuses by
      core.exception_handler.api_exception_handler
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiExample, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.catalog import get_plan_catalog
from billing.models import Subscription
from billing.serializers import (
    CancelSubscriptionSerializer,
    CreateOrderSerializer,
    CreateSubscriptionSerializer,
    PaymentOrderSerializer,
    PlanChangeSerializer,
    PlanTierSerializer,
    SubscriptionSerializer,
)
from billing.services import OrderPaymentProcessor, SubscriptionLifecycleManager
from core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


def _actor(request) -> str:
    """Audit actor for the authenticated caller."""
    return f"user:{request.user.pk}"


# =============================================================================
# Plan Catalog
# =============================================================================


class PlanListView(APIView):
    """
    List the plan tiers.

    GET /api/v1/billing/plans/
    """

    permission_classes = [AllowAny]

    @extend_schema(
        summary="List plan tiers",
        tags=["Billing - Plans"],
        responses={200: PlanTierSerializer(many=True)},
    )
    def get(self, request):
        tiers = get_plan_catalog().list_tiers()
        return Response(PlanTierSerializer(tiers, many=True).data)


# =============================================================================
# Payment Orders
# =============================================================================


class CreateOrderView(APIView):
    """
    Create a PayPal order for a virtual consultation.

    POST /api/v1/billing/orders/

    Request body:
        {
            "tenant_id": 1,
            "patient_id": 10,
            "doctor_id": 3,
            "service_id": 7,
            "slot_start": "2026-03-01T09:30:00",
            "notes": "Follow-up"
        }

    Returns:
        201 with the order, including the PayPal approval_url
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Create consultation payment order",
        tags=["Billing - Orders"],
        request=CreateOrderSerializer,
        responses={
            201: PaymentOrderSerializer,
            400: OpenApiResponse(description="Invalid input or no consultation fee"),
            404: OpenApiResponse(description="Unknown tenant, patient, doctor or service"),
            502: OpenApiResponse(description="PayPal unavailable"),
        },
    )
    def post(self, request):
        serializer = CreateOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = OrderPaymentProcessor().create_order(
            actor=_actor(request), **serializer.validated_data
        )
        return Response(
            PaymentOrderSerializer(order).data, status=status.HTTP_201_CREATED
        )


class CaptureOrderView(APIView):
    """
    Capture an order the patient approved at PayPal.

    POST /api/v1/billing/orders/{order_id}/capture/

    Returns:
        200 with the order and appointment id when paid (or already paid),
        402 when PayPal declined the payment
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Capture approved order",
        tags=["Billing - Orders"],
        request=None,
        responses={
            200: PaymentOrderSerializer,
            402: OpenApiResponse(
                description="Payment declined",
                examples=[
                    OpenApiExample(
                        "Declined",
                        value={
                            "success": False,
                            "error": "INSTRUMENT_DECLINED",
                            "error_code": "PAYMENT_DECLINED",
                        },
                    ),
                ],
            ),
            404: OpenApiResponse(description="Unknown order"),
            409: OpenApiResponse(description="Order already failed"),
            502: OpenApiResponse(description="PayPal unavailable"),
        },
    )
    def post(self, request, order_id: str):
        outcome = OrderPaymentProcessor().capture_order(order_id, actor=_actor(request))

        if not outcome.success:
            return Response(
                {
                    "success": False,
                    "error": outcome.decline_reason or "Payment was declined",
                    "error_code": "PAYMENT_DECLINED",
                    "order": PaymentOrderSerializer(outcome.order).data,
                },
                status=status.HTTP_402_PAYMENT_REQUIRED,
            )

        data = PaymentOrderSerializer(outcome.order).data
        data["already_processed"] = outcome.already_processed
        data["needs_reconciliation"] = outcome.needs_reconciliation
        return Response(data)


# =============================================================================
# Subscriptions
# =============================================================================


class CreateSubscriptionView(APIView):
    """
    Start a subscription for a clinic.

    POST /api/v1/billing/subscriptions/

    Request body:
        {"tenant_id": 1, "tier": "PROFESSIONAL", "cycle": "MONTHLY"}

    Returns:
        201 with the subscription; the clinic completes approval at approval_url
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Start subscription",
        tags=["Billing - Subscriptions"],
        request=CreateSubscriptionSerializer,
        responses={
            201: SubscriptionSerializer,
            409: OpenApiResponse(description="Tenant already has a live subscription"),
            500: OpenApiResponse(description="Tier has no PayPal plan configured"),
        },
    )
    def post(self, request):
        serializer = CreateSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionLifecycleManager().create_subscription(
            actor=_actor(request), **serializer.validated_data
        )
        return Response(
            SubscriptionSerializer(subscription).data, status=status.HTTP_201_CREATED
        )


class SubscriptionDetailView(APIView):
    """
    Subscription detail by PayPal subscription id.

    GET /api/v1/billing/subscriptions/{subscription_id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Subscription detail",
        tags=["Billing - Subscriptions"],
        responses={200: SubscriptionSerializer, 404: OpenApiResponse(description="Not found")},
    )
    def get(self, request, subscription_id: str):
        subscription = Subscription.objects.filter(
            provider_subscription_id=subscription_id
        ).first()
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                error_code="SUBSCRIPTION_NOT_FOUND",
            )
        return Response(SubscriptionSerializer(subscription).data)


class PlanChangeView(APIView):
    """
    Upgrade or downgrade a subscription.

    POST /api/v1/billing/subscriptions/{subscription_id}/plan-change/

    Request body:
        {"tier": "ENTERPRISE", "immediate": true}

    Without "immediate" the change is scheduled for the next renewal.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Change plan",
        tags=["Billing - Subscriptions"],
        request=PlanChangeSerializer,
        responses={200: SubscriptionSerializer},
    )
    def post(self, request, subscription_id: str):
        serializer = PlanChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionLifecycleManager().request_plan_change(
            subscription_id,
            serializer.validated_data["tier"],
            immediate=serializer.validated_data["immediate"],
            actor=_actor(request),
        )
        return Response(SubscriptionSerializer(subscription).data)


class CancelSubscriptionView(APIView):
    """
    Schedule a cancellation.

    POST /api/v1/billing/subscriptions/{subscription_id}/cancel/

    Request body:
        {"reason": "Closing the clinic"}
        {"effective_date": "2026-12-31T00:00:00Z"}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Schedule cancellation",
        tags=["Billing - Subscriptions"],
        request=CancelSubscriptionSerializer,
        responses={200: SubscriptionSerializer},
    )
    def post(self, request, subscription_id: str):
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        subscription = SubscriptionLifecycleManager().request_cancellation(
            subscription_id,
            effective_date=serializer.validated_data.get("effective_date"),
            reason=serializer.validated_data.get("reason", ""),
            actor=_actor(request),
        )
        logger.info(
            "Cancellation scheduled via API",
            extra={
                "subscription_id": subscription_id,
                "effective_date": str(subscription.cancellation_effective_date),
            },
        )
        return Response(SubscriptionSerializer(subscription).data)

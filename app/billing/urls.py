"""
URL configuration for the billing app.

All routes are prefixed with /api/v1/billing/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("billing/", include("billing.urls")),
    ]
"""

from django.urls import path

from billing import views
from billing.webhooks.views import paypal_webhook

app_name = "billing"

urlpatterns = [
    # Plans
    path("plans/", views.PlanListView.as_view(), name="plan_list"),
    # Consultation payments
    path("orders/", views.CreateOrderView.as_view(), name="order_create"),
    path(
        "orders/<str:order_id>/capture/",
        views.CaptureOrderView.as_view(),
        name="order_capture",
    ),
    # Subscriptions
    path(
        "subscriptions/",
        views.CreateSubscriptionView.as_view(),
        name="subscription_create",
    ),
    path(
        "subscriptions/<str:subscription_id>/",
        views.SubscriptionDetailView.as_view(),
        name="subscription_detail",
    ),
    path(
        "subscriptions/<str:subscription_id>/plan-change/",
        views.PlanChangeView.as_view(),
        name="subscription_plan_change",
    ),
    path(
        "subscriptions/<str:subscription_id>/cancel/",
        views.CancelSubscriptionView.as_view(),
        name="subscription_cancel",
    ),
    # Webhook endpoints
    path("webhooks/paypal/", paypal_webhook, name="paypal_webhook"),
]

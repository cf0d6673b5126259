"""
URL configuration for the clinic billing backend.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/auth/token/            - Obtain JWT pair
    /api/v1/auth/token/refresh/    - Refresh JWT access token
    /api/v1/billing/               - Billing endpoints
        plans/                     - Plan tier catalog (GET)
        orders/                    - Create consultation payment order (POST)
        orders/{order_id}/capture/ - Capture an approved order (POST)
        subscriptions/             - Start a tenant subscription (POST)
        subscriptions/{id}/        - Subscription detail (GET)
        subscriptions/{id}/plan-change/ - Upgrade/downgrade plan tier (POST)
        subscriptions/{id}/cancel/ - Schedule cancellation (POST)
        webhooks/paypal/           - PayPal webhook endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("auth/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("billing/", include("billing.urls")),
]

urlpatterns = [
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    path("admin/", admin.site.urls),
    path("health/", health_check, name="health_check"),
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Clinic Billing Admin"
admin.site.site_title = "Clinic Billing"
admin.site.index_title = "Payments & Subscriptions"

"""
Billing: clinic payment and subscription lifecycle engine.

Key components:
    - catalog.py: PlanTierCatalog (tiers, prices, provider plan ids)
    - adapters/: PayPalAdapter gateway client and credential resolution
    - services/order_processor.py: One-time consultation payments
    - services/subscription_lifecycle.py: Clinic subscription state machine
    - monitoring/: BillingMetrics counters and BillingAlertService
    - webhooks/: Verified, deduplicated, bounded webhook ingestion
    - tasks.py: Celery beat jobs (health checks, scheduled changes, retries)
"""

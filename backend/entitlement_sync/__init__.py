"""Entitlement Sync Backend Application.

Accounts, authentication and subscription-entitlement reconciliation of
Stripe webhook events.

Modules:
    - core: Configuration, database, logging, metrics, Celery setup
    - modules.auth: Account authentication and the identity gate
    - modules.billing: Webhook pipeline and entitlement store
    - modules.premium: Entitlement-gated endpoints
"""

__version__ = "0.1.0"

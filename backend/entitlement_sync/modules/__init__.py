"""Application modules.

- auth: Account registration, login and JWT handling, identity gate
- billing: Stripe webhook verification, normalization and entitlement reconciliation
- premium: Entitlement-gated account features
"""

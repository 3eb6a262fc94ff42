"""
Application constants.

Stable across environments. Anything that varies per deployment lives in
config.py.
"""

API_TITLE = "StoryScene Subscriptions API"
API_VERSION = "1.0.0"
API_DESCRIPTION = (
    "Subscription plans, credit metering and Stripe/PayPal billing for the "
    "StoryScene video generator."
)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"

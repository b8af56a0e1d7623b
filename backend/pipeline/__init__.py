# pipeline/__init__.py
# ============================================================================
# TRUCKSY PAYMENTS — PAYMENT PIPELINE
# ============================================================================
# aggregator -> gateway client -> reconciliation -> lifecycles, fronted by
# pipeline.checkout.CheckoutService
# ============================================================================

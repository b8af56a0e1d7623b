# schemas/__init__.py
# ============================================================================
# TRUCKSY PAYMENTS — SCHEMAS
# ============================================================================
# Domain models (schemas.domain) and post-commit events
# (schemas.event_definitions)
# ============================================================================

# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Reliability Engine
# ═══════════════════════════════════════════════════════════════
"""
Billing reliability engine for HarborList premium subscriptions:
payment retries, dunning, disputes and processor webhooks.
"""

__version__ = "1.0.0"

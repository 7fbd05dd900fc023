# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Core
# Configuration, logging, exceptions, persistence and billing logic
# ═══════════════════════════════════════════════════════════════

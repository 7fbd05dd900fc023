#!/usr/bin/env python3
# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Application Entry Point
# Run the FastAPI server
# ═══════════════════════════════════════════════════════════════

import uvicorn
from dotenv import load_dotenv

from harbor_billing.core.config import get_settings
from harbor_billing.core.logging import configure_logging


def main():
    """Run the HarborList billing API server."""
    load_dotenv()
    settings = get_settings()
    configure_logging(log_level=settings.log_level, log_format=settings.log_format)

    print(f"""
╔═══════════════════════════════════════════════════════════════╗
║         HarborList Billing - Reliability Engine               ║
║      Retries · Dunning · Disputes · Processor Webhooks        ║
╚═══════════════════════════════════════════════════════════════╝

Starting server on {settings.api_host}:{settings.api_port}
Payment processor: {settings.payment_processor}
Debug mode: {settings.debug}
    """)

    uvicorn.run(
        "harbor_billing.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level="debug" if settings.debug else settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

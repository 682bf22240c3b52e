"""
Payment Consumer Module Entry Point

Allows execution via: python -m apps.payments
"""

import asyncio

from apps.payments.consumer import main

if __name__ == "__main__":
    asyncio.run(main())

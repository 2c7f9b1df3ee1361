import asyncio
import logging
from storefront.storefront import Storefront
from storefront.config import setup_logging

async def main():
    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)

    storefront = Storefront()
    try:
        # Connect, apply migrations and check the notifier
        await storefront.start()
        logger.info("Storefront database is ready")
    except Exception as e:
        logger.error(f"Error starting storefront: {e}", exc_info=True)
        raise
    finally:
        await storefront.stop()

if __name__ == "__main__":
    asyncio.run(main())

import asyncio
import logging
from storefront.app import Storefront
from storefront.config import setup_logging

async def main():
    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)

    # One pass over crypto payments still awaiting confirmation; run from cron
    storefront = Storefront.with_database()
    try:
        await storefront.start()
        summary = await storefront.tracker.sweep()
        logger.info(f"Payment sweep finished: {summary}")
    except Exception as e:
        logger.error(f"Error during payment sweep: {e}", exc_info=True)
        raise
    finally:
        await storefront.stop()

if __name__ == "__main__":
    asyncio.run(main())

"""Скрипт для ручного запуска проходов по платежам и удержаниям."""
import argparse
import asyncio
import logging

from paycore.database import AsyncSessionLocal
from paycore.services.sweeper import PaymentSweeper

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(expire: bool = True, release: bool = True):
    """Истечь просроченные платежи и выплатить удержания с наступившим сроком."""
    sweeper = PaymentSweeper(AsyncSessionLocal)
    try:
        if expire:
            result = await sweeper.expire_pending_payments()
            logger.info(f"Просрочено платежей: {result.processed}, ошибок: {result.failed}")
        if release:
            result = await sweeper.release_due_holds()
            logger.info(f"Выплачено удержаний: {result.processed}, ошибок: {result.failed}")
    except Exception as e:
        logger.error(f"Ошибка при обработке платежей: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Ручной запуск проходов по платежам")
    parser.add_argument("--only-expire", action="store_true", help="только истечение pending-платежей")
    parser.add_argument("--only-release", action="store_true", help="только выплата удержаний")
    args = parser.parse_args()

    asyncio.run(main(expire=not args.only_release, release=not args.only_expire))

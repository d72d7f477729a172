"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from paycore.config import settings
from paycore.api.v1 import router as api_v1_router
from paycore.core.events import event_service
from paycore.database import AsyncSessionLocal
from paycore.services.sweeper import PaymentSweeper

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def expire_pending_payments():
    """Периодическая задача: просроченные pending-платежи -> failed."""
    try:
        result = await PaymentSweeper(AsyncSessionLocal).expire_pending_payments()
        if result.processed or result.failed:
            logger.info(f"Истечение платежей: обработано {result.processed}, ошибок {result.failed}")
    except Exception as e:
        logger.error(f"Ошибка при истечении платежей: {e}", exc_info=True)


async def release_due_holds():
    """Периодическая задача: выплата удержаний с наступившим release_at."""
    try:
        result = await PaymentSweeper(AsyncSessionLocal).release_due_holds()
        if result.processed or result.failed:
            logger.info(f"Выплата удержаний: обработано {result.processed}, ошибок {result.failed}")
    except Exception as e:
        logger.error(f"Ошибка при выплате удержаний: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    await event_service.connect()

    if settings.is_production and not settings.iyzico_secret_key:
        logger.warning("⚠️ IYZICO_SECRET_KEY не задан: webhook iyzico будут отклоняться")

    scheduler.add_job(
        expire_pending_payments,
        trigger=CronTrigger.from_crontab(settings.payment_sweep_cron),
        id="expire_pending_payments",
        name="Истечение незавершённых платежей",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        release_due_holds,
        trigger=CronTrigger.from_crontab(settings.payment_sweep_cron),
        id="release_due_holds",
        name="Выплата удержаний продавцам",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Планировщик задач запущен, расписание проходов: {settings.payment_sweep_cron}")

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await event_service.disconnect()


app = FastAPI(
    title="Marketplace Payments API",
    description="Оплата заказов, escrow-удержания и возвраты",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - в development режиме разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "Marketplace Payments API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}

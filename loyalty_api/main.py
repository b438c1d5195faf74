"""
FastAPI приложение программы лояльности
Погашение наград, возвраты за просроченные коды, реферальная программа
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.database import init_db, close_db
from shared.redis_client import close_redis
from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR
from shared.validation import ValidationError
from loyalty_api.health import router as health_router
from loyalty_api.routes.admin import router as admin_router
from loyalty_api.routes.points import router as points_router
from loyalty_api.routes.referrals import router as referrals_router
from loyalty_api.routes.rewards import router as rewards_router
from loyalty_api.schemas import error_response

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "loyalty_api.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager для FastAPI
    """
    # Startup
    logger.info("🚀 Starting Loyalty API...")

    # Инициализация БД
    await init_db()
    logger.info("✅ Database initialized")

    yield

    # Shutdown
    logger.info("🛑 Shutting down Loyalty API...")
    await close_db()
    await close_redis()
    logger.info("✅ Loyalty API stopped")


# Создание FastAPI приложения
app = FastAPI(
    title="Dumpling Rewards API",
    description="Loyalty points, reward redemption and referral program",
    version="1.0.0",
    lifespan=lifespan
)


# Подключение роутеров
app.include_router(health_router)
app.include_router(rewards_router)
app.include_router(referrals_router)
app.include_router(points_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "ok",
        "service": "Dumpling Rewards API",
        "version": "1.0.0"
    }


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    """
    Ошибки валидации: неизвестные сущности -> 404, остальное -> 422
    """
    status_code = 404 if exc.error_code.startswith("unknown_") else 422
    logger.info(f"Validation error on {request.url.path}: {exc}")
    return error_response(status_code, exc.error_code, str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик ошибок
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


def main():
    import uvicorn
    from shared.config import API_HOST, API_PORT

    uvicorn.run(
        "loyalty_api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()

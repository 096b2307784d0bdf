from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from strategy_lab.config import get_settings
from strategy_lab.database import get_db
import structlog

router = APIRouter()
logger = structlog.get_logger()

@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    health_status = {
        "status": "ok",
        "database": "unknown",
        "market_data_source": settings.MARKET_DATA_SOURCE,
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error("Health check failed for database", error=str(e))
        health_status["database"] = "disconnected"
        health_status["status"] = "degraded"

    return health_status

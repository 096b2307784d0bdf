from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from strategy_lab.config import get_settings
from strategy_lab.exceptions import InputError, StrategyLabError
from strategy_lab.schemas.common import ErrorResponse
from strategy_lab.utils.logging import setup_logging
from strategy_lab.routers import health, market_data, backtest

settings = get_settings()
setup_logging()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    import structlog
    from strategy_lab.database import engine, Base
    # Import models so they are registered in Base
    from strategy_lab import models

    log = structlog.get_logger()
    log.info("Application starting up...", version=settings.VERSION)

    async with engine.begin() as conn:
        # Alembic owns the schema in production; create_all keeps local runs simple
        await conn.run_sync(Base.metadata.create_all)

    yield
    # Shutdown
    log.info("Application shutting down...")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(InputError)
async def input_error_handler(request: Request, exc: InputError):
    return JSONResponse(status_code=400, content=ErrorResponse(error=str(exc)).model_dump())

@app.exception_handler(StrategyLabError)
async def service_error_handler(request: Request, exc: StrategyLabError):
    return JSONResponse(status_code=502, content=ErrorResponse(error=str(exc)).model_dump())

# Routers
app.include_router(health.router, tags=["Health"])
app.include_router(market_data.router, prefix=f"{settings.API_V1_STR}/market-data", tags=["Market Data"])
app.include_router(backtest.router, prefix=f"{settings.API_V1_STR}/backtest", tags=["Backtest"])

@app.get("/healthz")
def healthz():
    return {"status": "ok"}


def run():
    """Console entry point: serve the app with uvicorn on API_HOST:API_PORT."""
    import uvicorn

    uvicorn.run("strategy_lab.main:app", host=settings.API_HOST, port=settings.API_PORT,
                log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()

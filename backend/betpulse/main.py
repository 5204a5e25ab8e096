import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from betpulse.api import finance, games
from betpulse.api.deps import mpesa_client
from betpulse.catalog import seed_games
from betpulse.config import settings
from betpulse.database import SessionLocal, engine, init_models
from betpulse.errors import BetPulseError
from betpulse.redis_client import redis_client

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    # Startup
    logger.info("Starting BetPulse API...")
    await init_models()
    await seed_games(SessionLocal)
    await redis_client.connect()
    await mpesa_client.register_c2b_urls()
    logger.info("BetPulse API started")
    yield
    # Shutdown
    logger.info("Shutting down BetPulse API...")
    await mpesa_client.close()
    await redis_client.disconnect()
    await engine.dispose()


app = FastAPI(
    title="BetPulse API",
    description="Provably fair instant-win games with M-Pesa wallet",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins if settings.environment == "production" else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(games.router)
app.include_router(finance.router)
app.include_router(finance.webhook_router)


@app.exception_handler(BetPulseError)
async def betpulse_error_handler(request: Request, exc: BetPulseError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message},
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    database_connected = True
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        database_connected = False
    redis_connected = await redis_client.ping()

    return {
        "status": "healthy" if (database_connected and redis_connected) else "degraded",
        "environment": settings.environment,
        "database_connected": database_connected,
        "redis_connected": redis_connected,
    }


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from app.core.config import settings
from app.db.engine import init_db
import logging
import time

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_AUTO_INIT_ON_STARTUP:
        logger.info("Initializing Database...")
        try:
            await init_db()
            logger.info("Database initialized successfully.")
        except Exception as e:
            logger.error(f"Startup Failure: {e}")
            raise
    yield
    logger.info("Shutting down...")

from app.routers import billing, webhooks

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Providers time out slow webhook deliveries and retry them.
    if process_time > 0.5:
        logger.warning(f"Slow Request: {request.method} {request.url.path} took {process_time:.4f}s")

    return response

@app.get("/health")
async def health():
    return {"status": "ok"}

app.include_router(webhooks.router, prefix="/webhooks")
app.include_router(billing.router, prefix="/billing")

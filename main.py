import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import SCHEDULER_ENABLED
from app.database import Base, SessionLocal, engine
from app.routes.trust import router
from app.rules import seed_default_rules
from app.scheduler import SchedulerService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    logger.info("Creating database tables if they don't exist...")
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_default_rules(db)
    finally:
        db.close()

    task = None
    if SCHEDULER_ENABLED:
        logger.info("Starting background scheduler...")
        task = asyncio.create_task(SchedulerService().run(SessionLocal))

    yield

    # --- Shutdown ---
    if task is not None:
        logger.info("Shutting down background scheduler...")
        task.cancel()


app = FastAPI(
    title="URL Trust Score API",
    description="Scores URLs from domain analysis and community ratings.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)

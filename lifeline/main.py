import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lifeline.config import LOG_LEVEL
from lifeline.database import close_db, get_db, init_db
from lifeline.dependencies import build_services
from lifeline.routers import ambulances, emergencies, hospitals, stream

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Lifeline dispatch...")
    await init_db()
    logger.info("Database initialized")
    services = build_services(await get_db())
    app.state.services = services
    await services.notifier.start()
    yield
    await services.notifier.stop()
    await close_db()
    logger.info("Lifeline dispatch shut down")


app = FastAPI(
    title="Lifeline",
    description="Ambulance dispatch core - hospital routing, ambulance assignment and live tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(stream.router)
app.include_router(emergencies.router)
app.include_router(ambulances.router)
app.include_router(hospitals.router)


@app.get("/health")
async def health():
    return {"status": "ok"}

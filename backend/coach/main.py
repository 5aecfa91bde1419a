import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .coach_chat import router as coach_chat_router
from .config import settings
from .database import close_db_pool, database_ready, init_db_pool
from .focus import router as focus_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db_pool()
    yield
    await close_db_pool()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(coach_chat_router)
app.include_router(focus_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "database": "ok" if await database_ready() else "unavailable"}

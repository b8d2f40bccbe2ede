import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.core.config import get_settings
from app.core.db import init_db
from app.core.logging_config import configure_logging
from app.services.topics.locks import build_write_serializer

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    if settings.app_env.strip().lower() == "production" and settings.secret_key == "change-me":
        logger.critical("SECRET_KEY must be set in production.")
        raise RuntimeError("SECRET_KEY must be set in production.")
    await init_db()
    # asyncio locks bind to the running loop: one serializer per lifespan.
    application.state.write_serializer = build_write_serializer(settings)
    logger.info(
        "Topic API ready (subtree write serialization %s)",
        "on" if settings.topic_serialize_subtree_writes else "off",
    )
    yield
    application.state.write_serializer = None


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}

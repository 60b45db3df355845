"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsai.api import router
from newsai.core.logging import configure_logging
from newsai.core.settings import APP_VERSION, PATHS
from newsai.db.base import Base
from newsai.db.session import SessionLocal, engine
from newsai.models import CreditRefund, KeyValueEntry, ProcessedPaymentEvent, User  # noqa: F401
from newsai.schemas.config import AppConfig
from newsai.services.config_store import load_config, save_config
from newsai.services.container import ServiceContainer, build_services


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        PATHS.runtime_root.mkdir(parents=True, exist_ok=True)

        container = services
        if container is None:
            Base.metadata.create_all(bind=engine)

            # Ensure config file exists with defaults.
            if not PATHS.config_path.exists():
                save_config(AppConfig())

            container = build_services(load_config(), SessionLocal)

        app.state.services = container
        await container.orchestrator.resume_pending()

        yield

        await container.orchestrator.shutdown()

    app = FastAPI(title="NewsAI Backend", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


app = create_app()

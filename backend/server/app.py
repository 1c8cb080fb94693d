"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (one SessionCoordinator per process)
- Register routes
- Release the microphone and socket on shutdown
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from audio.microphone import SoundDeviceMicrophone
from config import AppConfig
from observability import logger
from observability.logger import log_event
from session.coordinator import SessionCoordinator

from server.routes import register_routes


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    coordinator: SessionCoordinator = app.state.coordinator
    log_event({
        "event_type": "APP_STARTED",
        "session_id": coordinator.session_id,
        "env": app.state.config.env,
        "has_credential": app.state.config.has_credential,
    })
    yield
    await coordinator.shutdown()


def create_app(
    config: AppConfig | None = None,
    coordinator: SessionCoordinator | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with a prebuilt coordinator
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    logger.set_enabled(config.enable_json_logs)

    app = FastAPI(title="Push-to-Talk Transcription API", lifespan=lifespan)

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One session per process; a missing key surfaces on the first toggle
    if coordinator is None:
        coordinator = SessionCoordinator.from_config(
            config,
            device=SoundDeviceMicrophone(device=config.audio_input_device),
        )
    app.state.coordinator = coordinator

    # Routes
    register_routes(app)

    return app

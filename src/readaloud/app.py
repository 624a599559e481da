"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .audio.engines import FfplayFileSink, FfplayPlaylistSink
from .audio.sink import AudioSink
from .config import PROJECT_ROOT, Settings, get_settings
from .logging_handlers import DailyLogFileHandler, prune_log_files
from .logging_settings import parse_logging_settings
from .playback.controller import PlaybackController
from .playback.events import PlaybackEventBus
from .routers.bookmarks import router as bookmarks_router
from .routers.logs import router as logs_router
from .routers.playback import router as playback_router
from .routers.profiles import router as profiles_router
from .routers.settings import router as settings_router
from .services.bookmarks import BookmarkStore
from .services.credentials import CredentialStore
from .services.document import DocumentStore
from .services.error_log import ErrorLogStore
from .services.profiles import ProfileService
from .services.progress import ProgressPersistence, ProgressStore
from .services.reader_settings import ReaderSettingsService

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_under(base: Path, p: Path) -> Path:
    # Absolute paths are taken as-is (tests, external mounts)
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def _configure_logging(settings: Settings) -> None:
    """Configure the root logger from the logging settings file."""
    load_dotenv()

    logging_settings = parse_logging_settings(
        _resolve_under(PROJECT_ROOT, settings.logging_settings_path)
    )
    log_dir = _resolve_under(PROJECT_ROOT, settings.log_dir)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if logging_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging_settings.terminal_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if logging_settings.file_level is not None:
        file_handler = DailyLogFileHandler(log_dir)
        file_handler.setLevel(logging_settings.file_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    enabled = [
        level
        for level in (logging_settings.terminal_level, logging_settings.file_level)
        if level is not None
    ]
    root_level = min(enabled) if enabled else logging.WARNING
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=root_level, handlers=handlers, force=True)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(root_level)

    # Request/response chatter only when debugging
    if root_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    prune_log_files(log_dir, logging_settings.retention_hours, logging.getLogger(__name__))


def select_audio_sink(settings: Settings) -> AudioSink:
    """Pick the buffering strategy: temp files on Windows, a live playlist elsewhere."""
    engine = settings.audio_engine
    if engine == "auto":
        engine = "files" if sys.platform.startswith("win") else "playlist"
    if engine == "files":
        return FfplayFileSink(settings.ffplay_path)
    return FfplayPlaylistSink(settings.ffplay_path)


def create_app(
    settings: Optional[Settings] = None,
    *,
    sink: Optional[AudioSink] = None,
) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(settings)
    logger = logging.getLogger(__name__)

    reader_settings_service = ReaderSettingsService(
        _resolve_under(PROJECT_ROOT, settings.reader_settings_path)
    )
    credential_store = CredentialStore(
        _resolve_under(PROJECT_ROOT, settings.credentials_path),
        env_openai_key=settings.openai_api_key,
        env_microsoft_key=settings.azure_speech_key,
    )
    bookmark_store = BookmarkStore(_resolve_under(PROJECT_ROOT, settings.bookmarks_path))
    error_log = ErrorLogStore(_resolve_under(PROJECT_ROOT, settings.error_log_path))
    progress = ProgressPersistence(
        ProgressStore(_resolve_under(PROJECT_ROOT, settings.progress_path))
    )
    documents = DocumentStore(_resolve_under(PROJECT_ROOT, settings.document_path))
    profile_service = ProfileService(
        _resolve_under(PROJECT_ROOT, settings.profiles_path),
        reader_settings_service,
        bookmark_store,
    )
    events = PlaybackEventBus()

    controller = PlaybackController(
        settings=reader_settings_service.get_settings(),
        credentials=credential_store.get,
        sink=sink or select_audio_sink(settings),
        progress=progress,
        temp_dir=_resolve_under(PROJECT_ROOT, settings.temp_audio_dir),
        bookmarks=bookmark_store,
        error_log=error_log,
        documents=documents,
        events=events,
        request_timeout=settings.request_timeout,
    )
    if controller.proxy_warning:
        logger.warning(controller.proxy_warning)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        restored = await controller.restore_document()
        if restored is not None:
            logger.info("Restored last text with %d chunks", len(restored.chunks))
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(controller.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Playback controller shutdown timed out after 10s")

    app = FastAPI(
        title="Read Aloud Backend",
        version="0.1.0",
        description="Chunked text-to-speech reading with buffered playback.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.reader_settings_service = reader_settings_service
    app.state.credential_store = credential_store
    app.state.bookmark_store = bookmark_store
    app.state.error_log = error_log
    app.state.profile_service = profile_service
    app.state.playback_controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(playback_router)
    app.include_router(settings_router)
    app.include_router(bookmarks_router)
    app.include_router(profiles_router)
    app.include_router(logs_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | None]:
        reader_settings = reader_settings_service.get_settings()
        return {
            "status": "ok",
            "provider": reader_settings.provider.value,
            "state": controller.snapshot().state,
        }

    return app


__all__ = ["create_app", "select_audio_sink"]

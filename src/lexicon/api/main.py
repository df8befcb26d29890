"""Living Lexicon scan service: FastAPI application.

This module defines :func:`create_app`, the module-level ``app`` built from
the global configuration, and the ``main()`` CLI function that launches the
uvicorn server.

Architecture
------------
Route functions are thin: they decode the request, call one
:class:`~lexicon.core.orchestrator.ScanOrchestrator` operation and shape the
JSON reply.  Every :class:`~lexicon.core.errors.LexiconError` raised below
them is turned into ``{"error", "code"}`` with the matching status by a
single exception handler.

- **Orchestrator** is built once per application in the lifespan handler
  and stored on ``app.state``.
- **Local assets** written by the local blob store are served by
  ``StaticFiles`` under ``assets_url_prefix``.
- **Rate limiting** caps requests per client on every ``/api/`` route, with a
  stricter cap on scans (see :mod:`lexicon.api.rate_limit`).

Endpoints
---------
========  ==============================  ==================================
Method    Path                            Purpose
========  ==============================  ==================================
GET       ``/health``                     Liveness check
POST      ``/api/scan``                   Run the scan pipeline
GET       ``/api/collection/{session}``   A session's results, newest first
POST      ``/api/tts``                    Narrate text (base64 audio)
GET       ``/api/analytics``              Aggregate counters
GET       ``/api/cache/stats``            Scan and collection cache stats
POST      ``/api/cache/flush``            Empty both caches
POST      ``/api/player``                 Set a session's display name
GET       ``/api/player/{session}``       A session's player profile
GET       ``/api/leaderboard``            Top players by result count
========  ==============================  ==================================

Usage
-----
CLI (installed entry point)::

    lexicon

Direct invocation::

    python -m lexicon.api.main
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from lexicon import __version__
from lexicon.api.models import PlayerRequest, ScanRequest, TtsRequest
from lexicon.api.rate_limit import RateLimitMiddleware, SlidingWindowLimiter
from lexicon.core.config import LexiconConfig, config
from lexicon.core.errors import LexiconError
from lexicon.core.log_utils import setup_logging
from lexicon.core.orchestrator import (
    LEADERBOARD_DEFAULT_LIMIT,
    ScanOrchestrator,
    build_orchestrator,
)

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[LexiconConfig], ScanOrchestrator]


def get_orchestrator(request: Request) -> ScanOrchestrator:
    """FastAPI dependency returning the application's orchestrator."""
    return request.app.state.orchestrator


def create_app(
    app_config: LexiconConfig | None = None,
    orchestrator_factory: OrchestratorFactory = build_orchestrator,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_config: Configuration to serve with.  Defaults to the global
            :data:`~lexicon.core.config.config`.
        orchestrator_factory: Builds the orchestrator at startup.  Tests
            pass a factory wiring in fake collaborators.

    Returns:
        The configured application.
    """
    cfg = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        setup_logging(cfg.log_level, cfg.log_format, cfg.service_name)
        app.state.orchestrator = orchestrator_factory(cfg)
        app.state.started_at = time.monotonic()
        logger.info("Scan orchestrator initialised.")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        app.state.orchestrator.close()
        logger.info("Scan orchestrator closed on shutdown.")

    app = FastAPI(
        title="Living Lexicon",
        description="Scan an object, get a creature: image analysis and synthesis pipeline.",
        version=__version__,
        lifespan=lifespan,
    )

    if cfg.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            api_limiter=SlidingWindowLimiter(cfg.rate_limit_requests, cfg.rate_limit_window_s),
            scan_limiter=SlidingWindowLimiter(
                cfg.scan_rate_limit_requests, cfg.rate_limit_window_s
            ),
        )

    # Allow cross-origin requests so the camera client can be served from a
    # different origin.  Restrict ``allow_origins`` in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.mount(
        cfg.assets_url_prefix,
        StaticFiles(directory=str(cfg.assets_dir)),
        name="assets",
    )

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    @app.exception_handler(LexiconError)
    async def lexicon_error_handler(request: Request, exc: LexiconError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Malformed request body", "code": "INVALID_INPUT"},
        )

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health(request: Request) -> dict:
        """Liveness check for container runtimes."""
        started_at = getattr(request.app.state, "started_at", time.monotonic())
        return {
            "status": "ok",
            "service": cfg.service_name,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_s": round(time.monotonic() - started_at, 3),
        }

    @app.post("/api/scan")
    async def scan(
        req: ScanRequest,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Run the scan pipeline for a base64 image.

        Returns ``{"monster": <result>, "cached": bool}``.  ``cached`` is
        true when the result came from the dedup cache or from a concurrent
        identical scan.
        """
        payload, mime_type = req.decode_image(cfg.max_image_bytes)
        outcome = await orchestrator.handle_scan(payload, req.session_id, mime_type=mime_type)
        return {
            "monster": outcome.result.model_dump(mode="json"),
            "cached": outcome.cache_hit,
        }

    @app.get("/api/collection/{session_id}")
    async def collection(
        session_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        records, cached = await orchestrator.list_collection(session_id)
        return {
            "monsters": [r.model_dump(mode="json") for r in records],
            "count": len(records),
            "cached": cached,
        }

    @app.post("/api/tts")
    async def tts(
        req: TtsRequest,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        audio = await orchestrator.narrate(req.text)
        return {"audio": audio}

    @app.get("/api/analytics")
    async def analytics(orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> dict:
        return (await orchestrator.get_analytics()).model_dump()

    @app.get("/api/cache/stats")
    async def cache_stats(orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> dict:
        return {name: stats.model_dump() for name, stats in orchestrator.get_cache_stats().items()}

    @app.post("/api/cache/flush")
    async def cache_flush(orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> dict:
        orchestrator.flush_caches()
        return {"success": True}

    @app.post("/api/player")
    async def set_player(
        req: PlayerRequest,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        profile = await orchestrator.set_player_name(req.session_id, req.name)
        return {"success": True, **profile.model_dump()}

    @app.get("/api/player/{session_id}")
    async def get_player(
        session_id: str,
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return (await orchestrator.get_player_profile(session_id)).model_dump()

    @app.get("/api/leaderboard")
    async def leaderboard(
        limit: str | None = Query(default=None),
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        """Top players.  A missing or non-numeric ``limit`` means the default."""
        try:
            parsed = int(limit) if limit is not None else LEADERBOARD_DEFAULT_LIMIT
        except ValueError:
            parsed = LEADERBOARD_DEFAULT_LIMIT
        entries = await orchestrator.get_leaderboard(parsed)
        return {
            "leaderboard": [e.model_dump() for e in entries],
            "total": len(entries),
        }

    return app


# ---------------------------------------------------------------------------
# Application instance served by ``main()``.
# ---------------------------------------------------------------------------
app = create_app()


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~lexicon.core.config.config` (loaded
    from ``LEXICON_SERVER_HOST`` and ``LEXICON_SERVER_PORT``).  Registered
    as the ``lexicon`` console script in ``pyproject.toml``.
    """
    import uvicorn

    uvicorn.run(
        "lexicon.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()

"""FastAPI application exposing the sync engine over HTTP."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from ..config import Config
from ..errors import (
    InvalidActionError,
    InvalidBatchError,
    PersistenceError,
    SerializationError,
)
from ..sync import SyncEngine, Transaction

logger = logging.getLogger(__name__)


def create_app(config: Config, engine: SyncEngine) -> FastAPI:
    """Create the FastAPI sync application.

    Args:
        config: Application configuration.
        engine: Connected SyncEngine serving all requests.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Sync Engine",
        description="Transaction log and bootstrap API for offline-first clients",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.engine = engine

    # ==================== Error Mapping ====================

    @app.exception_handler(InvalidBatchError)
    async def invalid_batch_handler(request: Request, exc: InvalidBatchError):
        content: dict[str, Any] = {"error": str(exc)}
        if isinstance(exc, InvalidActionError):
            content["action"] = exc.action
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(PersistenceError)
    @app.exception_handler(SerializationError)
    async def storage_error_handler(request: Request, exc: Exception):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    # ==================== Sync API ====================

    # Engine calls run in a worker thread; a cancelled request leaves the
    # thread running, so a batch is never abandoned mid-commit.

    @app.post("/api/transactions")
    async def post_transactions(
        transactions: list[Any] = Body(...),
    ) -> dict[str, Any]:
        """Ingest a batch of transactions."""
        batch = [Transaction.from_dict(t) for t in transactions]
        sync_id = await run_in_threadpool(engine.ingest, batch)
        return {"sync_id": sync_id}

    @app.get("/api/transactions")
    async def get_transactions(
        from_position: int | None = Query(None, alias="from"),
        to_position: int | None = Query(None, alias="to"),
    ) -> dict[str, Any]:
        """Get transactions logged within a position range."""
        sync_id, transactions = await run_in_threadpool(
            engine.fetch_range, from_position, to_position
        )
        return {
            "sync_id": sync_id,
            "transactions": [t.to_dict() for t in transactions],
        }

    @app.get("/api/bootstrap")
    async def get_bootstrap() -> dict[str, Any]:
        """Get a full snapshot of current models and the sync horizon."""
        sync_id, models = await run_in_threadpool(engine.bootstrap)
        return {"sync_id": sync_id, "models": models}

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get engine statistics."""
        stats = {"timestamp": datetime.now().isoformat()}
        stats.update(await run_in_threadpool(engine.get_stats))
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; a lagging store is reported, not failed.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
        }

        try:
            health["pending_batches"] = await run_in_threadpool(
                engine.pending_batches
            )
        except PersistenceError as e:
            health["status"] = "degraded"
            health["error"] = str(e)

        return health

    # ==================== Static UI ====================

    ui_path = Path(config.server.ui_path)
    if ui_path.is_dir():
        app.mount("/", StaticFiles(directory=str(ui_path), html=True), name="ui")
        logger.info(f"Serving UI from {ui_path}")
    else:
        logger.debug(f"UI path {ui_path} not found, static files disabled")

    return app

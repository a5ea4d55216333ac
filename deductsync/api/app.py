"""FastAPI application exposing the sync manager and asset worker."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from ..assets import AssetCacheWorker, AssetRequest
from ..config import Config
from ..sync import (
    DeductionsSyncManager,
    add_deduction_safe,
    delete_deduction_safe,
    update_deduction_safe,
)

logger = logging.getLogger(__name__)


def _request_destination(request: Request) -> str:
    """Infer the fetch destination of an incoming asset request."""
    if destination := request.headers.get("sec-fetch-dest"):
        return destination
    if "text/html" in request.headers.get("accept", ""):
        return "document"
    return ""


def create_app(
    config: Config,
    manager: DeductionsSyncManager | None = None,
    worker: AssetCacheWorker | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    The manager is initialized on startup if it is not already, and cleaned
    up on shutdown only in that case.

    Args:
        config: Application configuration.
        manager: Optional sync manager for the deduction routes.
        worker: Optional asset worker for the worker and asset routes.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_manager = manager is not None and not manager.is_initialized
        if owns_manager:
            await manager.initialize()
        try:
            yield
        finally:
            if owns_manager:
                await manager.cleanup()

    app = FastAPI(
        title="deductsync",
        description="Realtime deduction records sync service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.manager = manager
    app.state.worker = worker

    def require_manager() -> DeductionsSyncManager:
        if manager is None:
            raise HTTPException(status_code=503, detail="No sync manager available")
        return manager

    def require_worker() -> AssetCacheWorker:
        if worker is None:
            raise HTTPException(status_code=503, detail="No asset worker available")
        return worker

    # ==================== Deductions ====================

    @app.get("/api/deductions")
    async def api_list_deductions(case_number: str | None = None) -> dict[str, Any]:
        """List cached deductions, optionally for one case."""
        sync = require_manager()
        if case_number is not None:
            records = sync.get_case_deductions(case_number)
        else:
            records = sync.get_all_deductions()

        return {
            "count": len(records),
            "deductions": [r.to_dict() for r in records],
        }

    @app.post("/api/deductions")
    async def api_add_deduction(data: dict[str, Any] = Body(...)) -> JSONResponse:
        """Create a deduction unless an identical one exists."""
        result = await add_deduction_safe(require_manager(), data)

        if result["success"]:
            status_code = 201
        elif result.get("duplicate"):
            status_code = 409
        else:
            status_code = 400
        return JSONResponse(result, status_code=status_code)

    @app.patch("/api/deductions/{deduction_id}")
    async def api_update_deduction(
        deduction_id: str, updates: dict[str, Any] = Body(...)
    ) -> JSONResponse:
        """Apply a partial update to a deduction."""
        sync = require_manager()
        if sync.get_deduction(deduction_id) is None:
            return JSONResponse(
                {"success": False, "error": f"Deduction not found: {deduction_id}"},
                status_code=404,
            )

        result = await update_deduction_safe(sync, deduction_id, updates)
        return JSONResponse(result, status_code=200 if result["success"] else 400)

    @app.delete("/api/deductions/{deduction_id}")
    async def api_delete_deduction(deduction_id: str) -> JSONResponse:
        """Delete a deduction."""
        sync = require_manager()
        if sync.get_deduction(deduction_id) is None:
            return JSONResponse(
                {"success": False, "error": f"Deduction not found: {deduction_id}"},
                status_code=404,
            )

        result = await delete_deduction_safe(sync, deduction_id)
        return JSONResponse(result, status_code=200 if result["success"] else 400)

    @app.post("/api/deductions/sync")
    async def api_sync_local() -> dict[str, Any]:
        """Push records from the local snapshot missing remotely."""
        added = await require_manager().sync_local_to_remote()
        return {"success": True, "added": added}

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK even if components are unavailable.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "node_name": config.node.name,
            "components": {
                "manager": manager is not None,
                "worker": worker is not None,
            },
        }

        if manager:
            health["manager"] = manager.get_status()
            if not manager.is_initialized:
                health["status"] = "degraded"

        if worker:
            try:
                health["worker"] = worker.get_status()
            except Exception as e:
                health["components"]["worker_error"] = str(e)

        return health

    # ==================== Worker ====================

    @app.post("/worker/message")
    async def worker_message(data: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Deliver a control message to the asset worker."""
        handled = await require_worker().handle_message(data)
        return {"handled": handled}

    @app.post("/worker/sync")
    async def worker_sync(data: dict[str, Any] = Body(default={})) -> dict[str, Any]:
        """Fire a background sync event."""
        tag = data.get("tag", "background-sync")
        notified = await require_worker().background_sync(tag)
        return {"tag": tag, "notified": notified}

    @app.get("/assets/{path:path}")
    async def assets(path: str, request: Request) -> Response:
        """Serve an app asset through the worker's fetch strategy."""
        asset_worker = require_worker()
        response = await asset_worker.fetch(
            AssetRequest(
                url=asset_worker.resolve(path or "./"),
                destination=_request_destination(request),
            )
        )
        return Response(
            content=response.body,
            status_code=response.status,
            headers=response.headers,
        )

    return app

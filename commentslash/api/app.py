"""HTTP endpoints over QuotaService.

Endpoints are plain `def` functions, so FastAPI runs them on its worker
thread pool; QuotaService's lock makes each call atomic.

Session identity comes from the X-Session-Id header or the session cookie;
a cookie is issued on first contact.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from commentslash.api.stream import SSE_HEADERS, quota_events
from commentslash.core.config import ServerConfig, Settings
from commentslash.core.log import short_id
from commentslash.quota.service import QuotaService
from commentslash.quota.sweeper import Sweeper

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
SESSION_HEADER = "x-session-id"


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReserveRequest(_Body):
    total_planned: int


class ConfirmRequest(_Body):
    actual_used: int | None = None
    succeeded: int | None = None
    failed: int = Field(default=0, ge=0)


class UsageRequest(_Body):
    cost: int = 0


class ActivityRequest(_Body):
    is_deleting: bool = False


def _set_session_cookie(response: Response, server: ServerConfig, session_id: str) -> None:
    response.set_cookie(
        server.session_cookie,
        session_id,
        max_age=server.session_cookie_max_age,
        path="/",
        httponly=True,
        samesite="strict",
    )


def create_app(
    service: QuotaService,
    settings: Settings | None = None,
    sweeper: Sweeper | None = None,
) -> FastAPI:
    """Build the FastAPI app. The sweeper, if given, runs for the app's lifetime."""
    server = (settings or Settings()).server

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if sweeper is not None:
            sweeper.start()
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.stop()

    app = FastAPI(title="commentslash-quota", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.service = service

    def session_id(request: Request, response: Response) -> str:
        header = request.headers.get(SESSION_HEADER)
        if header:
            return header
        cookie = request.cookies.get(server.session_cookie)
        if cookie:
            return cookie
        issued = str(uuid.uuid4())
        request.state.issued_session = issued
        _set_session_cookie(response, server, issued)
        return issued

    @app.exception_handler(ValueError)
    async def invalid_input(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"success": False, "message": str(exc)}, status_code=400)

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": VERSION,
        }

    @app.get("/api/quota")
    def get_quota() -> dict[str, Any]:
        return {"quota": service.status().to_wire()}

    @app.post("/api/quota")
    def record_quota(body: UsageRequest, response: Response) -> dict[str, Any]:
        if body.cost <= 0:
            response.status_code = 400
            return {"success": False, "message": "Invalid cost"}
        if not service.record_usage(body.cost):
            response.status_code = 429
            return {
                "success": False,
                "message": "Quota limit exceeded",
                "quota": service.status().to_wire(),
            }
        return {"success": True, "quota": service.status().to_wire()}

    @app.post("/api/quota/reserve")
    def reserve(
        body: ReserveRequest,
        response: Response,
        sid: str = Depends(session_id),
    ) -> dict[str, Any]:
        result = service.reserve(sid, body.total_planned)
        payload: dict[str, Any] = {
            "success": result.success,
            "chunkSize": result.chunk_size,
            "quota": result.status.to_wire(),
        }
        if not result.success:
            response.status_code = 429
            payload["message"] = result.message
            payload["resetsIn"] = result.resets_in
            payload["retryAfterSeconds"] = result.retry_after_seconds
            return payload
        payload["parallel"] = service.parallel_allowance(sid)
        return payload

    @app.post("/api/quota/confirm")
    def confirm(
        body: ConfirmRequest,
        response: Response,
        sid: str = Depends(session_id),
    ) -> dict[str, Any]:
        if body.succeeded is not None:
            report = service.confirm_batch(sid, body.succeeded, body.failed)
            return {
                "confirmed": report.confirmed,
                "nextChunk": report.next_chunk,
                "shouldContinue": report.should_continue,
                "parallel": report.parallel,
                "message": report.message,
                "quota": report.status.to_wire(),
            }
        if body.actual_used is None:
            response.status_code = 400
            return {"success": False, "message": "actualUsed or succeeded is required"}
        confirmed = service.confirm(sid, body.actual_used)
        return {"confirmed": confirmed, "quota": service.status().to_wire()}

    @app.post("/api/quota/release")
    def release(sid: str = Depends(session_id)) -> dict[str, Any]:
        service.release(sid)
        return {"success": True, "quota": service.status().to_wire()}

    @app.post("/api/quota/activity")
    def activity(body: ActivityRequest, sid: str = Depends(session_id)) -> dict[str, Any]:
        service.touch_activity(sid, is_deleting=body.is_deleting)
        return {"parallel": service.parallel_allowance(sid)}

    @app.delete("/api/quota/session")
    def end_session(sid: str = Depends(session_id)) -> dict[str, Any]:
        service.unregister_session(sid)
        return {"success": True}

    @app.get("/api/quota/estimate")
    def estimate(
        operation: str = Query(...),
        count: int = Query(..., ge=0),
    ) -> dict[str, Any]:
        cost = service.estimate_cost(operation, count)
        return {"operation": operation, "count": count, "cost": cost}

    @app.get("/api/quota/stream")
    async def stream(request: Request, sid: str = Depends(session_id)) -> StreamingResponse:
        await run_in_threadpool(service.register_session, sid)
        logger.debug("Dashboard connected: session %s", short_id(sid))
        response = StreamingResponse(
            quota_events(
                service,
                sid,
                keepalive_seconds=server.keepalive_seconds,
                is_disconnected=request.is_disconnected,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
        issued = getattr(request.state, "issued_session", None)
        if issued is not None:
            _set_session_cookie(response, server, issued)
        return response

    return app

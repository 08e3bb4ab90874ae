"""FastAPI application receiving Lark and Slack events over HTTP."""

import json
import logging
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from chatrelay import __version__
from chatrelay.relay.exceptions import WebhookVerificationFailure
from chatrelay.relay.models import Platform
from chatrelay.relay.orchestrator import RelayOrchestrator

logger = logging.getLogger(__name__)


async def _read_json(request: Request) -> tuple[bytes, dict[str, Any]] | None:
    body = await request.body()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return body, payload


def _events_router(orchestrator: RelayOrchestrator) -> APIRouter:
    router = APIRouter(tags=["events"])

    async def _dispatch(platform: Platform, request: Request) -> Response:
        parsed = await _read_json(request)
        if parsed is None:
            logger.warning(f"Invalid JSON body on /{platform.value}/events")
            return Response(status_code=400, content="invalid json")
        raw_body, payload = parsed

        try:
            result = await orchestrator.handle_inbound_webhook(
                platform, payload, headers=dict(request.headers), raw_body=raw_body
            )
        except WebhookVerificationFailure as e:
            logger.warning(f"Rejected {platform.label} webhook: {e}")
            return Response(status_code=401, content="unauthorized")

        if result.challenge is not None:
            return JSONResponse({"challenge": result.challenge})
        return JSONResponse({"ok": True, "handled": result.handled})

    @router.post("/lark/events")
    async def lark_events(request: Request) -> Response:
        """Receive Lark event callbacks (plain or encrypted)."""
        return await _dispatch(Platform.LARK, request)

    @router.post("/slack/events")
    async def slack_events(request: Request) -> Response:
        """Receive Slack Events API callbacks."""
        return await _dispatch(Platform.SLACK, request)

    return router


def _status_router(orchestrator: RelayOrchestrator) -> APIRouter:
    router = APIRouter(tags=["status"])

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @router.get("/status")
    async def status() -> dict[str, Any]:
        return orchestrator.get_status().model_dump(mode="json")

    @router.get("/messages/check")
    async def check_message(
        channel: str | None = Query(None),
        ts: str | None = Query(None),
        workspace: str | None = Query(None),
    ) -> Response:
        """Tell external callers whether a message was posted by the relay."""
        if not channel or not ts:
            return JSONResponse({"error": "channel and ts are required"}, status_code=400)
        sent = await orchestrator.was_sent_by_us(channel, ts, workspace)
        return JSONResponse({"channel": channel, "ts": ts, "sent_by_relay": sent})

    return router


def create_app(orchestrator: RelayOrchestrator) -> FastAPI:
    """Create the webhook application for an orchestrator.

    Args:
        orchestrator: The relay receiving the events.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="chatrelay",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.include_router(_events_router(orchestrator))
    app.include_router(_status_router(orchestrator))
    return app

"""HTTP gateway for Courier.

FastAPI app exposing:
  POST /webhook            : feed the default webhook channel
  POST /webhook/{channel}  : feed a named webhook channel
  GET  /health             : per-channel health and listener state
"""

import hmac
import json
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

import config
from channels.base import ChannelRegistry, ParseError, TransportError
from channels.webhook import WebhookChannel

log = logging.getLogger(__name__)


def _request_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-webhook-token", "")


def create_app(registry: ChannelRegistry, scheduler=None, *, webhook_token: str | None = None) -> FastAPI:
    """Create the FastAPI app wired to the channel registry."""
    app = FastAPI(title="Courier", docs_url=None, redoc_url=None)
    token = config.GATEWAY_WEBHOOK_TOKEN if webhook_token is None else webhook_token

    async def _accept(channel_name: str, request: Request) -> JSONResponse:
        # Token auth (constant-time comparison)
        if token and not hmac.compare_digest(_request_token(request), token):
            raise HTTPException(status_code=401, detail="Invalid webhook token")

        channel = registry.get(channel_name)
        if not isinstance(channel, WebhookChannel):
            raise HTTPException(status_code=404, detail=f"No webhook channel named {channel_name!r}")

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Body must be JSON") from None

        try:
            event_id = channel.receive(payload)
        except ParseError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        except TransportError as exc:
            log.warning("Webhook %s rejected event: %s", channel_name, exc)
            raise HTTPException(status_code=503, detail=str(exc)) from None

        return JSONResponse({"status": "accepted", "id": event_id}, status_code=202)

    @app.post("/webhook")
    async def webhook(request: Request):
        return await _accept("webhook", request)

    @app.post("/webhook/{channel_name}")
    async def webhook_named(channel_name: str, request: Request):
        return await _accept(channel_name, request)

    @app.get("/health")
    async def health():
        body = {"status": "ok", "channels": await registry.health()}
        if scheduler is not None:
            body["listeners"] = scheduler.status()
        return body

    return app

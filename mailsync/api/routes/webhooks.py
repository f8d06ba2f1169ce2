"""
Provider Push Notification Routes

Public endpoints called by Microsoft Graph and Google Cloud Pub/Sub. They are
authenticated by the payload itself (clientState, registered addresses), not
by the API key.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from mailsync.api.dependencies import get_services
from mailsync.services.container import EmailServices
from mailsync.utils.logging import get_logger

logger = get_logger("webhooks_api")
router = APIRouter()


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Non-JSON webhook body on {request.url.path}")
        return None


@router.api_route("/{provider_kind}", methods=["GET", "POST"])
async def receive_webhook(
    provider_kind: str,
    request: Request,
    services: EmailServices = Depends(get_services),
) -> Response:
    """Validation handshakes and change notifications for every push provider."""
    body = await _read_json(request) if request.method == "POST" else None
    outcome = await services.webhooks.handle(provider_kind, dict(request.query_params), body)

    if outcome.media_type == "text/plain":
        return PlainTextResponse(str(outcome.body), status_code=outcome.status_code)
    return JSONResponse(outcome.body, status_code=outcome.status_code)

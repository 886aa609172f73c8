"""Gateway webhook and deposit action endpoint.

One endpoint accepts both payload shapes:
- Direct actions: ``{"action": "create_deposit" | "capture_deposit", ...}``
- Gateway webhooks: ``{"event_type": "...", "resource": {...}}``

The response is always JSON with a ``success`` flag. Status codes follow the
reconciliation result; 5xx is reserved for gateway and store failures.
"""

import json
import logging

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from payment_reconciler.api.dependencies import Reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.options("/paypal", status_code=status.HTTP_200_OK)
async def paypal_preflight() -> Response:
    """Bare preflight for clients that skip CORS headers."""
    return Response(status_code=status.HTTP_200_OK)


@router.post("/paypal")
async def paypal_webhook(request: Request, reconciler: Reconciler) -> JSONResponse:
    """Reconcile a PayPal webhook or deposit action."""
    body = await request.body()
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Rejected webhook with invalid JSON body (%d bytes)", len(body))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid JSON body"},
        )

    result = await reconciler.handle(payload)
    return JSONResponse(status_code=result.status_code, content=result.body)

"""Chat API endpoints for the proxy."""

import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from tempoproxy.app.core.logging import RequestLogData, get_logger, log_request
from tempoproxy.app.exceptions import (
    GatewayException,
    InvalidCanvasIdError,
    UnsupportedRequestError,
)
from tempoproxy.app.middleware.auth import require_api_key
from tempoproxy.app.middleware.request_id import get_request_id
from tempoproxy.app.providers.translate import ChatRequest, list_models
from tempoproxy.app.services.canvas import get_canvas_id_from_request, validate_canvas_id

router = APIRouter()
logger = get_logger(__name__)


@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(
    request: Request,
    _api_key: Optional[str] = Depends(require_api_key),
) -> JSONResponse:
    """Handle chat completion requests.

    This endpoint:
    1. Validates the request body and resolves the target canvas
    2. Waits for a slot in the admission queue
    3. Calls the upstream through the provider (session + retries)
    4. Records statistics and a request log line

    Rate limiting happens earlier, in RateLimitMiddleware.

    Raises:
        HTTPException: 400/422 for malformed bodies
        GatewayException: Typed control-plane and upstream failures
    """
    request_id = get_request_id(request)
    state = request.app.state

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body")

    try:
        chat_request = ChatRequest.model_validate(body)
    except ValidationError as validation_error:
        raise HTTPException(
            status_code=422,
            detail={
                "error": "validation_error",
                "message": str(validation_error)
            }
        )

    if chat_request.stream:
        raise UnsupportedRequestError("Streaming responses are not supported")

    canvas_id = get_canvas_id_from_request(request, state.settings.tempo_canvas_id)
    if not validate_canvas_id(canvas_id):
        raise InvalidCanvasIdError(canvas_id)

    start = time.monotonic()
    result: Optional[Dict[str, Any]] = None
    status = 500
    error: Optional[str] = None
    try:
        result = await state.request_queue.enqueue(
            lambda: state.provider.chat_completion(chat_request, canvas_id)
        )
        status = 200
        return JSONResponse(content=result, headers={"X-Request-ID": request_id})
    except GatewayException as e:
        status = e.status_code
        error = e.message
        raise
    except Exception as e:
        error = str(e)
        raise
    finally:
        duration_ms = int((time.monotonic() - start) * 1000)
        state.stats.record_request(chat_request.model, duration_ms, status == 200)
        usage = (result or {}).get("usage", {})
        log_request(
            RequestLogData(
                method=request.method,
                path=request.url.path,
                model=chat_request.model,
                reasoning=chat_request.reasoning,
                search=chat_request.search,
                canvas_id=canvas_id,
                duration_ms=duration_ms,
                input_tokens=usage.get("prompt_tokens"),
                output_tokens=usage.get("completion_tokens"),
                status=status,
                success=status == 200,
                error=error,
            )
        )


@router.get("/v1/models")
async def models() -> Dict[str, Any]:
    """List available models (OpenAI API compatible)."""
    return list_models()

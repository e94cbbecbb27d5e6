"""Canvas id resolution and validation.

Every upstream chat call targets a canvas. Callers may pick one per request;
otherwise the configured default is used.
"""

import re
from typing import Any

from fastapi import Request

CANVAS_ID_HEADER = "x-canvas-id"
CANVAS_ID_QUERY_PARAM = "canvas_id"

# RFC 4122 UUID, versions 1-5
UUID_REGEX = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def validate_canvas_id(canvas_id: Any) -> bool:
    """Check that ``canvas_id`` is a UUID string."""
    if not canvas_id or not isinstance(canvas_id, str):
        return False
    return UUID_REGEX.match(canvas_id) is not None


def get_canvas_id_from_request(request: Request, default_canvas_id: str) -> str:
    """Resolve the canvas id for a request.

    Priority: ``x-canvas-id`` header, then ``canvas_id`` query parameter,
    then ``default_canvas_id``. The result is not validated here.
    """
    header_value = request.headers.get(CANVAS_ID_HEADER)
    if header_value:
        return header_value

    query_value = request.query_params.get(CANVAS_ID_QUERY_PARAM)
    if query_value:
        return query_value

    return default_canvas_id

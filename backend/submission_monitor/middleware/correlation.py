"""X-Request-ID propagation for the monitoring API.

The id is echoed back on every response, bound into structlog entries via
``core.logging.add_correlation_id`` and copied into error payloads next to
the ``debug_id``. Ids sent by public status page clients are accepted as-is
unless they are empty or oversized, in which case a fresh UUID replaces them.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def _acceptable_request_id(value: str) -> bool:
    return 0 < len(value) <= MAX_REQUEST_ID_LENGTH


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=_acceptable_request_id,
    )


def get_correlation_id() -> str | None:
    """The current request's id, or None outside a request (scheduler ticks)."""
    return correlation_id.get(None)

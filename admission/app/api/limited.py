"""Rate limited endpoints, one per algorithm.

Each route admits or rejects the caller with the algorithm named by its
path. The generic /limited/{variant} route lets callers pick the algorithm
at request time; unknown names are rejected with 400.
"""

import hashlib
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from admission.app.core.config import settings
from admission.app.core.logging import get_log_context, get_logger
from admission.app.exceptions import RateLimitExceededError
from admission.app.middleware.request_id import get_request_id
from admission.app.services.rate_limit import (
    Algorithm,
    RateLimitDecision,
    RateLimitEngine,
    get_rate_limit_engine,
)

logger = get_logger(__name__)
router = APIRouter()


def get_client_id(request: Request) -> str:
    """Get the rate limit client identifier for the request.

    Uses the caller's IP address, or the first X-Forwarded-For hop when
    the deployment sits behind a trusted proxy. The address is hashed
    with SHA-256 so raw IPs never reach the store or the logs.
    """
    client_ip = None
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    # 32 hex chars (128 bits) for collision resistance
    return hashlib.sha256(client_ip.encode()).hexdigest()[:32]


def add_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_at_ms // 1000)


async def _admit(
    variant: "Algorithm | str",
    request: Request,
    engine: RateLimitEngine,
    client_id: str,
) -> Response:
    decision = await engine.decide(variant, client_id)
    if not decision.allowed:
        logger.info(
            "Rejecting request",
            extra=get_log_context(
                request_id=get_request_id(request),
                client_id=client_id,
                algorithm=decision.algorithm.value,
                path=request.url.path,
            ),
        )
        raise RateLimitExceededError(
            limit=decision.limit,
            reset_at_ms=decision.reset_at_ms,
            retry_after=decision.retry_after,
        )

    response = PlainTextResponse("Hello World!")
    add_rate_limit_headers(response, decision)
    return response


EngineDep = Annotated[RateLimitEngine, Depends(get_rate_limit_engine)]
ClientIdDep = Annotated[str, Depends(get_client_id)]


@router.get("/fixed-window")
async def fixed_window(request: Request, engine: EngineDep, client_id: ClientIdDep) -> Response:
    return await _admit(Algorithm.FIXED_WINDOW, request, engine, client_id)


@router.get("/sliding-window")
async def sliding_window(request: Request, engine: EngineDep, client_id: ClientIdDep) -> Response:
    return await _admit(Algorithm.SLIDING_WINDOW, request, engine, client_id)


@router.get("/token-bucket")
async def token_bucket(request: Request, engine: EngineDep, client_id: ClientIdDep) -> Response:
    return await _admit(Algorithm.TOKEN_BUCKET, request, engine, client_id)


@router.get("/limited/{variant}")
async def limited(
    variant: str, request: Request, engine: EngineDep, client_id: ClientIdDep
) -> Response:
    """Apply the algorithm named in the path."""
    return await _admit(variant, request, engine, client_id)

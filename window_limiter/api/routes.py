"""HTTP route definitions for the window limiter service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field

from ..domain.decision import Decision
from ..domain.limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class DecisionRequest(BaseModel):
    """Identifier to spend one unit of budget for."""

    identifier: str


class DecisionResponse(BaseModel):
    """Serialised representation of a limiter :class:`Decision`."""

    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    remaining: int
    limit: int
    reset_time: int | None = Field(default=None, alias="resetTime")
    retry_after: int | None = Field(default=None, alias="retryAfter")
    degraded: bool | None = None
    error: str | None = None

    @classmethod
    def from_domain(cls, decision: Decision) -> "DecisionResponse":
        """Build a response model from the limiter decision."""
        return cls(**decision.to_dict())


def get_limiter(request: Request) -> SlidingWindowLimiter:
    """Resolve the limiter stored on the FastAPI application state."""
    limiter: SlidingWindowLimiter = request.app.state.limiter
    return limiter


@router.post(
    "/decisions",
    response_model=DecisionResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def create_decision(
    payload: DecisionRequest,
    limiter: SlidingWindowLimiter = Depends(get_limiter),
) -> DecisionResponse:
    """Consume one unit of the identifier's budget and return the decision."""
    try:
        decision = await limiter.consume(payload.identifier)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return DecisionResponse.from_domain(decision)

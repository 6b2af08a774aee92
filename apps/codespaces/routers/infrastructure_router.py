from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from pydantic import BaseModel, Field

from ..errors import InvalidActionError, InvalidServiceError
from ..models.environment_models import OperationResult
from ..services.container import Container
from ..services.orchestrator import parse_action, parse_service
from .deps import get_container

logger = logging.getLogger("codespaces.api.infrastructure")
tracer = trace.get_tracer(__name__)

router = APIRouter(
    prefix="/infrastructure",
    tags=["infrastructure"],
)


class InfrastructureRequest(BaseModel):
    service: Optional[str] = Field(
        default=None,
        description="Restrict the action to one resource class: docker | network | volume.",
    )
    force: bool = Field(
        default=False,
        description="Skip confirmation.",
    )
    confirmed: bool = Field(
        default=False,
        description="Web-layer confirmation token; stands in for the CLI prompt.",
    )
    environment: Optional[str] = Field(
        default=None,
        description="Environment name; defaults to CODESPACES_ENVIRONMENT.",
    )


@router.get(
    "/status",
    response_model=OperationResult,
    summary="Aggregated Docker / Network / Volume / orchestrator status.",
)
def infrastructure_status(
    environment: Optional[str] = None,
    container: Container = Depends(get_container),
) -> OperationResult:
    return container.orchestrator.execute("status", environment=environment)


@router.post(
    "/{action}",
    response_model=OperationResult,
    summary="Run start | stop | restart | cleanup | status.",
    description=(
        "Mutating actions need either `force` or `confirmed`. Without them the "
        "request is a successful no-op (`cancelled=true`), matching a declined "
        "confirmation prompt."
    ),
)
def infrastructure_action(
    action: str,
    body: Optional[InfrastructureRequest] = None,
    container: Container = Depends(get_container),
) -> OperationResult:
    body = body or InfrastructureRequest()

    with tracer.start_as_current_span("api.infrastructure.action") as span:
        span.set_attribute("codespaces.action", action)

        try:
            parse_action(action)
            parse_service(body.service)
        except (InvalidActionError, InvalidServiceError) as exc:
            # Nothing is touched for a malformed request.
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

        return container.orchestrator.execute(
            action,
            service=body.service,
            force=body.force,
            confirm=lambda _prompt: body.confirmed,
            environment=body.environment,
        )

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from opentelemetry import trace
from pydantic import BaseModel, Field

from ..models.rollback_models import RollbackExecution, TriggerDecision, TriggerKind
from ..services.container import Container
from .deps import get_container

logger = logging.getLogger("codespaces.api.rollback")
tracer = trace.get_tracer(__name__)

router = APIRouter(
    prefix="/rollback",
    tags=["rollback"],
)


class TriggerRequest(BaseModel):
    trigger: TriggerKind = Field(
        default=TriggerKind.MANUAL,
        description="manual, or a metric trigger fed with `metric_value`.",
    )
    metric_value: Optional[float] = Field(
        default=None,
        description="Error rate / response time sample for metric triggers.",
    )
    reason: Optional[str] = None


@router.post(
    "/trigger",
    response_model=TriggerDecision,
    summary="Manual rollback, or one metric sample for a threshold trigger.",
)
async def trigger_rollback(
    req: TriggerRequest,
    x_codespaces_role: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
) -> TriggerDecision:
    if req.trigger == TriggerKind.HEALTH_CHECK_FAILURE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="health_check_failure is driven by the monitoring loop",
        )
    if req.trigger != TriggerKind.MANUAL and req.metric_value is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{req.trigger.value} needs metric_value",
        )

    context = (
        {"role": x_codespaces_role, "reason": req.reason}
        if req.trigger == TriggerKind.MANUAL
        else {"value": req.metric_value}
    )

    with tracer.start_as_current_span("api.rollback.trigger") as span:
        span.set_attribute("codespaces.rollback.trigger", req.trigger.value)
        loop = asyncio.get_running_loop()
        decision = await loop.run_in_executor(
            None, container.rollback.evaluate_and_execute, req.trigger, context
        )
        span.set_attribute("codespaces.rollback.fired", decision.fired)

    if decision.rejected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)
    return decision


@router.get("/executions", response_model=List[RollbackExecution])
def list_executions(container: Container = Depends(get_container)) -> List[RollbackExecution]:
    return list(reversed(container.rollback.executions()))

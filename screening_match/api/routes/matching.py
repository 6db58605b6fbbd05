"""Waitlist matching API routes: manual trigger and execution history."""
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from screening_match.api.requests import TriggerMatchingRequest
from screening_match.api.responses import (
    ExecutionListResponse,
    ExecutionLogListResponse,
    SystemHealthResponse,
)
from screening_match.config.logging_config import get_logger
from screening_match.matching.exceptions import ExecutionNotFoundError
from screening_match.matching.orchestrator import MatchingOrchestrator, get_matching_orchestrator
from screening_match.models.enums import ExecutionStatus, LogLevel
from screening_match.models.matching import MatchingConfig, RunResult
from screening_match.storage.repository import MatchingRepository

logger = get_logger(__name__)

router = APIRouter(prefix="/matching", tags=["Matching"])


def get_orchestrator() -> MatchingOrchestrator:
    return get_matching_orchestrator()


def get_repository(
    orchestrator: MatchingOrchestrator = Depends(get_orchestrator),
) -> MatchingRepository:
    return orchestrator.repository


def _total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if total else 0


@router.post("/trigger", response_model=RunResult)
async def trigger_matching(
    request: Optional[TriggerMatchingRequest] = None,
    orchestrator: MatchingOrchestrator = Depends(get_orchestrator),
):
    """
    Run the matching job now.

    The body is optional; any field left out keeps its configured default.
    A run that fails is still reported as a RunResult with success=false.
    """
    overrides = request.model_dump(exclude_none=True) if request else None
    logger.info("Manual matching run requested", overrides=overrides)
    return await orchestrator.run(overrides=overrides)


@router.get("/executions", response_model=ExecutionListResponse)
async def list_executions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[ExecutionStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    repository: MatchingRepository = Depends(get_repository),
):
    executions, total = await repository.list_executions(
        page=page, page_size=page_size, status=status, date_from=date_from, date_to=date_to
    )
    return ExecutionListResponse(
        executions=executions,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    repository: MatchingRepository = Depends(get_repository),
):
    """Execution record with its per-screening-type results."""
    try:
        return await repository.get_execution(execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")


@router.get("/executions/{execution_id}/logs", response_model=ExecutionLogListResponse)
async def list_execution_logs(
    execution_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    level: Optional[LogLevel] = None,
    patient_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    repository: MatchingRepository = Depends(get_repository),
):
    try:
        await repository.get_execution(execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")

    logs, total = await repository.list_execution_logs(
        execution_id,
        page=page,
        page_size=page_size,
        level=level.value if level else None,
        patient_id=patient_id,
        campaign_id=campaign_id,
    )
    return ExecutionLogListResponse(
        execution_id=execution_id,
        logs=logs,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=_total_pages(total, page_size),
    )


@router.get("/config", response_model=MatchingConfig)
async def get_matching_config(orchestrator: MatchingOrchestrator = Depends(get_orchestrator)):
    """Defaults applied to runs that do not override them."""
    return orchestrator.default_config()


@router.get("/health", response_model=SystemHealthResponse)
async def matching_health(repository: MatchingRepository = Depends(get_repository)):
    return SystemHealthResponse(**await repository.system_health())

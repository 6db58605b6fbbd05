"""Response models for screening match API endpoints."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ExecutionListResponse(BaseModel):
    """Page of matching executions, newest first."""
    executions: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int


class ExecutionLogListResponse(BaseModel):
    """Page of audit log entries for one execution, oldest first."""
    execution_id: str
    logs: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int


class SystemHealthResponse(BaseModel):
    """Matching health over a recent window."""
    status: str
    window_hours: int
    total_executions: int
    completed_executions: int
    failed_executions: int
    success_rate: float
    average_processing_time_ms: int
    pending_waitlist_count: int
    total_allocations: int
    last_execution: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    components: Dict[str, bool]

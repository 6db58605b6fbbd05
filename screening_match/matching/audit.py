"""Append-only audit trail for one matching run.

Entries are buffered in memory while a group is being planned and written to
`matching_execution_logs` in one insert per flush.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from screening_match.config.logging_config import get_logger
from screening_match.models.enums import LogLevel

logger = get_logger(__name__)


class ExecutionAuditor:
    def __init__(self, repository, execution_id: str):
        self.repository = repository
        self.execution_id = execution_id
        self._buffer: List[Dict[str, Any]] = []

    def _add(self, level: LogLevel, message: str, context: Dict[str, Any]) -> None:
        self._buffer.append({
            "level": level.value,
            "message": message,
            "context": context,
            "timestamp": datetime.now(timezone.utc),
        })

    def info(self, message: str, **context: Any) -> None:
        self._add(LogLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._add(LogLevel.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._add(LogLevel.ERROR, message, context)

    async def flush(self) -> None:
        """Write buffered entries. A failed write is logged and dropped."""
        entries, self._buffer = self._buffer, []
        if not entries:
            return
        try:
            await self.repository.append_logs(self.execution_id, entries)
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to write execution log entries",
                execution_id=self.execution_id,
                dropped=len(entries),
                error=str(e),
            )

"""
AI Request Log for Cricket SQL
Records every text-to-SQL request and the accuracy feedback users give on it
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

ai_chat_request = Table(
    "ai_chat_request",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("question", Text, nullable=False),
    Column("sanitized_question", Text),
    Column("league", String(16)),
    Column("generated_sql", Text),
    Column("row_count", Integer),
    Column("execution_time_ms", Integer),
    Column("success", Boolean, nullable=False),
    Column("error_code", String(32)),
    Column("error_message", Text),
    Column("is_accurate", Boolean),
    Column("feedback_note", Text),
    Column("feedback_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


@dataclass
class RequestLogRecord:
    """One text-to-SQL request, success or failure"""
    id: str
    question: str
    success: bool
    sanitized_question: Optional[str] = None
    league: Optional[str] = None
    generated_sql: Optional[str] = None
    row_count: Optional[int] = None
    execution_time_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_row(self) -> dict:
        row = asdict(self)
        row["created_at"] = datetime.now(timezone.utc)
        return row


def _serialize(row: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(row)
    for key in ("created_at", "feedback_at"):
        if isinstance(data.get(key), datetime):
            data[key] = data[key].isoformat()
    return data


class RequestLogStore:
    """
    Audit log on the ai_chat_request table.

    Every operation catches and logs its own failures: a broken audit log
    must never break a user request.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def create_table(self) -> bool:
        """Create ai_chat_request if it does not exist"""
        try:
            metadata.create_all(self.engine, tables=[ai_chat_request])
            return True
        except Exception as e:
            logger.error(f"Failed to create ai_chat_request table: {e}")
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def log_request_sync(self, record: RequestLogRecord) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(ai_chat_request.insert().values(**record.to_row()))
            logger.debug(f"Logged AI request {record.id} (success={record.success})")
            return True
        except Exception as e:
            logger.error(f"Failed to log AI request {record.id}: {e}")
            return False

    async def log_request(self, record: RequestLogRecord) -> bool:
        return await asyncio.to_thread(self.log_request_sync, record)

    def update_accuracy_sync(
        self,
        request_id: str,
        is_accurate: bool,
        feedback_note: Optional[str] = None,
    ) -> bool:
        """
        Record accuracy feedback for a request

        Returns:
            True if a row was updated, False otherwise (including failures)
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(ai_chat_request)
                    .where(ai_chat_request.c.id == request_id)
                    .values(
                        is_accurate=is_accurate,
                        feedback_note=feedback_note,
                        feedback_at=datetime.now(timezone.utc),
                    )
                )
            return result.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to update accuracy for {request_id}: {e}")
            return False

    async def update_accuracy(
        self,
        request_id: str,
        is_accurate: bool,
        feedback_note: Optional[str] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self.update_accuracy_sync, request_id, is_accurate, feedback_note
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request_by_id_sync(self, request_id: str) -> Optional[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(ai_chat_request).where(ai_chat_request.c.id == request_id)
                ).mappings().first()
            return _serialize(row) if row else None
        except Exception as e:
            logger.error(f"Failed to fetch request {request_id}: {e}")
            return None

    async def get_request_by_id(self, request_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_request_by_id_sync, request_id)

    def get_recent_requests_sync(self, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(ai_chat_request)
                    .order_by(ai_chat_request.c.created_at.desc())
                    .limit(limit)
                ).mappings().all()
            return [_serialize(row) for row in rows]
        except Exception as e:
            logger.error(f"Failed to fetch recent requests: {e}")
            return []

    async def get_recent_requests(self, limit: int = 100) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_recent_requests_sync, limit)

    def get_accuracy_stats_sync(self) -> Dict[str, Any]:
        """Counts of rated requests; accuracyRate is a percentage"""
        empty = {"total": 0, "accurate": 0, "inaccurate": 0, "accuracyRate": 0}
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(ai_chat_request.c.is_accurate, func.count())
                    .where(ai_chat_request.c.is_accurate.is_not(None))
                    .group_by(ai_chat_request.c.is_accurate)
                ).all()
        except Exception as e:
            logger.error(f"Failed to fetch accuracy stats: {e}")
            return empty

        counts = {bool(is_accurate): count for is_accurate, count in rows}
        accurate = counts.get(True, 0)
        inaccurate = counts.get(False, 0)
        total = accurate + inaccurate

        return {
            "total": total,
            "accurate": accurate,
            "inaccurate": inaccurate,
            "accuracyRate": (accurate / total) * 100 if total else 0,
        }

    async def get_accuracy_stats(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.get_accuracy_stats_sync)

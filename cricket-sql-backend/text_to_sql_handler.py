"""
Text-to-SQL Streaming Request Handler

Drives one request from raw body to exactly one terminal stream event:

    credentials? -> validate + sanitize -> [status] generate
                 -> [status] shape check -> lookups -> [status] main
                 -> result | error

GUARANTEES:
1. Exactly one `result` XOR `error` event, then the sink is closed
2. Every failure is mapped to (code, status) through the PipelineError taxonomy;
   anything unexpected becomes a generic DATABASE_ERROR 500
3. Every request is written to the audit log in the background; the write
   never delays or fails the response
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Set

from env_guard import Settings
from errors import ErrorCode, PipelineError
from event_stream import ERROR_EVENT, RESULT_EVENT, STATUS_EVENT, EventSink
from query_pipeline import QueryPipeline
from request_log import RequestLogRecord, RequestLogStore
from request_validator import CricketQuestion, parse_question
from response_formatter import (
    format_ai_configuration_error,
    format_pipeline_error,
    format_result,
    format_server_error,
)
from sql_generator import SQLGenerationClient

logger = logging.getLogger(__name__)

GENERATING_STATUS = "Generating SQL for your cricket question..."
VALIDATING_STATUS = "Validating the generated SQL and resolving player names..."


class TextToSqlHandler:
    """
    One instance per process; all request state is local to handle().

    Args:
        settings: Process settings (credential presence, default league)
        generation_client: SQL generation client, None when unconfigured
        pipeline: Sequential query orchestrator
        request_log: Audit log store (optional)
    """

    def __init__(
        self,
        settings: Settings,
        generation_client: Optional[SQLGenerationClient],
        pipeline: QueryPipeline,
        request_log: Optional[RequestLogStore] = None,
    ):
        self.settings = settings
        self.generation_client = generation_client
        self.pipeline = pipeline
        self.request_log = request_log
        self._background_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def start(self, body: Any, sink: EventSink, request_id: Optional[str] = None) -> asyncio.Task:
        """
        Run handle() as its own task.

        The task is detached from the HTTP response, so a client disconnect
        does not cancel in-flight statements.
        """
        task = asyncio.create_task(self.handle(body, sink, request_id))
        self._track(task)
        return task

    async def handle(self, body: Any, sink: EventSink, request_id: Optional[str] = None) -> None:
        request_id = request_id or str(uuid.uuid4())
        start = time.perf_counter()

        question: Optional[CricketQuestion] = None
        statements: List[str] = []
        event = ERROR_EVENT
        payload: Dict[str, Any] = {}
        record = RequestLogRecord(
            id=request_id,
            question=self._raw_question(body),
            success=False,
        )

        try:
            if self.generation_client is None or not self.settings.has_generation_credentials:
                logger.error("GROQ_API_KEY is not configured; rejecting request")
                payload = format_ai_configuration_error()
                record.error_code = ErrorCode.AI_ERROR.value
                record.error_message = payload["error"]["message"]
                return

            question = parse_question(body, self.settings.default_league)
            record.sanitized_question = question.sanitized
            record.league = question.league
            logger.info(f"[{request_id}] Processing question: {question.sanitized}")

            await sink.emit(STATUS_EVENT, {"message": GENERATING_STATUS})
            statements = await self.generation_client.generate_sql(question)
            record.generated_sql = "; ".join(statements)

            await sink.emit(STATUS_EVENT, {"message": VALIDATING_STATUS})
            self.generation_client.validate_sequential_queries(statements)

            result = await self.pipeline.execute_sequential_queries(
                statements,
                status_callback=lambda message: sink.emit(STATUS_EVENT, {"message": message}),
            )

            elapsed_ms = self._elapsed_ms(start)
            event = RESULT_EVENT
            payload = format_result(result.data, result.generated_sql, elapsed_ms, request_id)

            record.success = True
            record.row_count = result.row_count
            record.execution_time_ms = elapsed_ms
            logger.info(f"[{request_id}] Completed: {result.row_count} rows in {elapsed_ms}ms")

        except PipelineError as e:
            logger.warning(f"[{request_id}] Failed with {e.code.value} ({e.status}): {e.message}")
            payload = format_pipeline_error(e)
            record.error_code = e.code.value
            record.error_message = e.message

        except Exception as e:
            logger.exception(f"[{request_id}] Unexpected error: {e}")
            payload = format_server_error()
            record.error_code = ErrorCode.DATABASE_ERROR.value
            record.error_message = str(e)

        finally:
            if record.execution_time_ms is None:
                record.execution_time_ms = self._elapsed_ms(start)
            try:
                await sink.emit(event, payload)
            finally:
                await sink.close()
                self._schedule_audit(record)

    # =========================================================================
    # AUDIT LOG (fire-and-forget)
    # =========================================================================

    def _schedule_audit(self, record: RequestLogRecord) -> None:
        if self.request_log is None:
            return
        self._track(asyncio.create_task(self.request_log.log_request(record)))

    def _track(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight background work (shutdown and tests)."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _raw_question(body: Any) -> str:
        if isinstance(body, dict) and isinstance(body.get("question"), str):
            return body["question"]
        return "" if body is None else str(body)[:500]

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int(round((time.perf_counter() - start) * 1000))

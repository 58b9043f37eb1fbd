"""
QueryPipeline - Sequential Query Orchestrator

Runs the generated statements of one request through the lookup -> splice ->
execute protocol:

    IDLE -> LOOKUP_PENDING -> RESOLVED -> MAIN_EXECUTED -> DONE
      \\__________________\\____________\\_____________-> ABORTED

- Lookups run strictly in order (batter before bowler) and each is safety
  validated before it executes.
- The main statement never executes before every lookup resolved a name.
- The spliced main statement is validated again before it executes.
- "Player not found" and "player found, no statistics" are distinct errors.

Contains NO SQL generation and NO transport logic. State lives on the
per-call PipelineRun; the orchestrator itself is shared across requests.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from errors import (
    NoStatisticsError,
    PipelineError,
    PlayerNotFoundError,
    SQLSafetyError,
)
from player_name_resolver import (
    ResolvedNames,
    extract_resolved_name,
    splice_resolved_names,
    split_statements,
)
from query_executor import QueryExecutor, QueryResult
from sql_validator import SQLSafetyValidator

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], Awaitable[None]]

MAIN_EXECUTION_STATUS = "Running your cricket query..."


# =============================================================================
# STATE
# =============================================================================

class PipelineState(Enum):
    IDLE = "idle"
    LOOKUP_PENDING = "lookup_pending"
    RESOLVED = "resolved"
    MAIN_EXECUTED = "main_executed"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class PipelineRun:
    """Per-request orchestration state."""
    state: PipelineState = PipelineState.IDLE
    transitions: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    resolved_names: List[str] = field(default_factory=list)
    executed_sql: List[str] = field(default_factory=list)
    abort_reason: Optional[str] = None

    def transition(self, new_state: PipelineState) -> None:
        logger.debug(f"[PIPELINE] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.transitions.append(new_state)


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class PipelineResult:
    """Outcome of a successful run."""
    data: List[Dict[str, Any]]
    generated_sql: str
    row_count: int
    execution_time_ms: int
    resolved_names: List[str] = field(default_factory=list)
    run: Optional[PipelineRun] = None


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class QueryPipeline:
    """
    Lookup -> splice -> execute, with validation before every execution.

    FLOW:
    1. Split statements into lookups + main (shape check)
    2. For each lookup: validate -> execute -> extract name (empty = abort)
    3. Splice names into the main statement
    4. Validate -> execute main
    5. Zero rows after resolving a name = abort (no statistics)
    """

    def __init__(self, executor: QueryExecutor, validator: Optional[SQLSafetyValidator] = None):
        self.executor = executor
        self.validator = validator or SQLSafetyValidator()

    async def execute_sequential_queries(
        self,
        statements: List[str],
        status_callback: Optional[StatusCallback] = None,
    ) -> PipelineResult:
        """
        Run the generated statements end to end.

        Args:
            statements: Generated statements, lookups first, main last
            status_callback: Awaited with a progress message before the main execution

        Returns:
            PipelineResult for the main statement

        Raises:
            PipelineError: MalformedLookupQueryError, SQLSafetyError,
                UnresolvedPlaceholderError, PlayerNotFoundError,
                NoStatisticsError or DatabaseError
        """
        run = PipelineRun()

        try:
            return await self._run(run, statements, status_callback)
        except PipelineError as e:
            run.abort_reason = e.message
            run.transition(PipelineState.ABORTED)
            logger.warning(f"[PIPELINE] Aborted: {e.message}")
            raise

    async def _run(
        self,
        run: PipelineRun,
        statements: List[str],
        status_callback: Optional[StatusCallback],
    ) -> PipelineResult:
        lookups, main = split_statements(statements)
        total_ms = 0

        # =====================================================================
        # LOOKUPS
        # =====================================================================
        if lookups:
            run.transition(PipelineState.LOOKUP_PENDING)

            for index, lookup_sql in enumerate(lookups):
                role = self._lookup_role(index, len(lookups))
                self._ensure_safe(lookup_sql)

                result = await self.executor.execute_query(lookup_sql)
                run.executed_sql.append(lookup_sql)
                total_ms += result.execution_time_ms

                name = extract_resolved_name(result.rows[0] if result.rows else None)
                if not name:
                    logger.info(f"[PIPELINE] No {role} matched lookup")
                    raise PlayerNotFoundError(role, lookup_sql)

                logger.info(f"[PIPELINE] Resolved {role}: {name}")
                run.resolved_names.append(name)

            run.transition(PipelineState.RESOLVED)

        names = ResolvedNames(
            batter=run.resolved_names[0] if run.resolved_names else None,
            bowler=run.resolved_names[1] if len(run.resolved_names) > 1 else None,
        )
        final_sql = splice_resolved_names(main, names)

        # =====================================================================
        # MAIN
        # =====================================================================
        self._ensure_safe(final_sql)

        if status_callback is not None:
            await status_callback(MAIN_EXECUTION_STATUS)

        result: QueryResult = await self.executor.execute_query(final_sql)
        run.executed_sql.append(final_sql)
        total_ms += result.execution_time_ms
        run.transition(PipelineState.MAIN_EXECUTED)

        if result.row_count == 0 and run.resolved_names:
            raise NoStatisticsError(run.resolved_names)

        run.transition(PipelineState.DONE)
        logger.info(f"[PIPELINE] Done: {result.row_count} rows, {total_ms}ms")

        return PipelineResult(
            data=result.rows,
            generated_sql=final_sql,
            row_count=result.row_count,
            execution_time_ms=total_ms,
            resolved_names=list(run.resolved_names),
            run=run,
        )

    def _ensure_safe(self, sql: str) -> None:
        validation = self.validator.validate(sql)
        if not validation.is_valid:
            raise SQLSafetyError(validation.errors, sql)

    @staticmethod
    def _lookup_role(index: int, lookup_count: int) -> str:
        if lookup_count == 1:
            return "player"
        return "batter" if index == 0 else "bowler"

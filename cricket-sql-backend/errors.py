"""
Pipeline Error Taxonomy
=======================

Every failure the text-to-SQL pipeline can surface to a client is one of
these exceptions. Each carries:
    - code:    one of the five ErrorCode values streamed to the client
    - status:  the HTTP status reported alongside the error event
    - message: a user-safe message (never raw engine or client text)

Collaborator exceptions (SQLAlchemy, Groq client, asyncio timeouts) are
caught where they happen and re-raised as one of these.
"""

from enum import Enum
from typing import List, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AI_ERROR = "AI_ERROR"
    SQL_ERROR = "SQL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"


class PipelineError(Exception):
    """Base class for all user-facing pipeline failures."""

    code: ErrorCode = ErrorCode.DATABASE_ERROR
    status: int = 500

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


# =============================================================================
# REQUEST
# =============================================================================

class RequestValidationError(PipelineError):
    code = ErrorCode.VALIDATION_ERROR
    status = 400


# =============================================================================
# GENERATION
# =============================================================================

class GenerationError(PipelineError):
    """The text-generation collaborator failed or returned unusable text."""
    code = ErrorCode.AI_ERROR
    status = 500


class GenerationUnavailableError(GenerationError):
    status = 503


class GenerationRateLimitError(GenerationError):
    code = ErrorCode.RATE_LIMIT_ERROR
    status = 429


class EmptyResponseError(GenerationError):
    pass


class NoStatementsParsedError(GenerationError):
    pass


# =============================================================================
# SQL SHAPE / SAFETY
# =============================================================================

class MalformedLookupQueryError(PipelineError):
    code = ErrorCode.SQL_ERROR
    status = 400


class SQLSafetyError(PipelineError):
    code = ErrorCode.SQL_ERROR
    status = 400

    def __init__(self, errors: List[str], sql: str = ""):
        self.errors = list(errors)
        self.sql = sql
        super().__init__(
            f"Generated query failed security validation: {', '.join(self.errors)}"
        )


class UnresolvedPlaceholderError(PipelineError):
    code = ErrorCode.SQL_ERROR
    status = 400

    def __init__(self, tokens: List[str]):
        self.tokens = list(tokens)
        super().__init__(
            f"Generated query still contains unresolved placeholders: {', '.join(self.tokens)}"
        )


# =============================================================================
# EXECUTION
# =============================================================================

class DatabaseErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    MISSING_OBJECT = "missing_object"
    CONSTRAINT = "constraint"
    INVALID_QUERY = "invalid_query"
    UNKNOWN = "unknown"


_KIND_STATUS = {
    DatabaseErrorKind.TIMEOUT: 408,
    DatabaseErrorKind.CONNECTION: 503,
}


class DatabaseError(PipelineError):
    code = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, kind: DatabaseErrorKind = DatabaseErrorKind.UNKNOWN):
        self.kind = kind
        super().__init__(message, status=_KIND_STATUS.get(kind, 500))


class PlayerNotFoundError(DatabaseError):
    def __init__(self, role: str, lookup_sql: str = ""):
        self.role = role
        self.lookup_sql = lookup_sql
        super().__init__(
            f"No matching {role} found in the database. Player not found."
        )


class NoStatisticsError(DatabaseError):
    def __init__(self, resolved_names: List[str]):
        self.resolved_names = list(resolved_names)
        super().__init__(
            f"Found {' and '.join(self.resolved_names)} but no statistics matched your question."
        )

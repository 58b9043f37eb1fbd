"""
Response Formatter
==================

Builds the payloads carried by `result` and `error` stream events.

Every user-facing error message passes through sanitize_error_message()
before it leaves the process, and every error carries code-specific
suggestions (plus tips when a player name could not be resolved).

This module is template-based: it reads errors and results and produces
dicts. It makes no decisions about the pipeline.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from errors import ErrorCode, PipelineError, PlayerNotFoundError, NoStatisticsError

logger = logging.getLogger(__name__)


# =============================================================================
# SANITIZATION
# =============================================================================

_SANITIZE_RULES = [
    (re.compile(r"\b[a-z][a-z0-9+]*://\S+", re.IGNORECASE), "[credentials]"),
    (re.compile(r"database\s+connection", re.IGNORECASE), "connection"),
    (re.compile(r"sqlalchemy|psycopg2?|postgresql|postgres|sqlite", re.IGNORECASE), "database"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[server]"),
    (re.compile(r"password", re.IGNORECASE), "[credentials]"),
    (re.compile(r"token", re.IGNORECASE), "[credentials]"),
    (re.compile(r"gsk_\w+"), "[credentials]"),
]


def sanitize_error_message(message: str) -> str:
    """Strip engine names, IP addresses and credential-looking text."""
    sanitized = message
    for pattern, replacement in _SANITIZE_RULES:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


# =============================================================================
# SUGGESTIONS
# =============================================================================

NAME_RESOLUTION_TIPS = [
    "Use the player's surname only (e.g. \"Mandhana\" instead of \"Smriti Mandhana\")",
    "Check the spelling of the player's name",
]


def generate_suggestions(code: ErrorCode, message: str) -> List[str]:
    lowered = message.lower()

    if code == ErrorCode.VALIDATION_ERROR:
        return [
            "Make sure your question contains only letters, numbers, and basic punctuation",
            "Keep your question under 500 characters",
            "Try asking about cricket statistics like \"top run scorers\" or \"bowling figures\"",
        ]

    if code == ErrorCode.AI_ERROR:
        return [
            "Try rephrasing your cricket question more clearly",
            "Ask about specific players, teams, or statistics",
            "Example: \"Who scored the most runs in WPL 2023?\"",
        ]

    if code == ErrorCode.SQL_ERROR:
        if "player name" in lowered:
            return [
                "Try using just the last name (e.g. \"Mandhana\" instead of \"Smriti Mandhana\")",
                "Check the spelling of player names",
            ]
        return [
            "Your question might be too complex - try breaking it into simpler parts",
            "Ask about one statistic at a time",
        ]

    if code == ErrorCode.DATABASE_ERROR:
        if "not found" in lowered or "no statistics" in lowered:
            return [
                "Check if the player name or team name is spelled correctly",
                "Try using partial names (e.g. \"Kaur\" instead of \"Harmanpreet Kaur\")",
                "Try a different season or league",
            ]
        if "connection" in lowered or "too long" in lowered or "timeout" in lowered:
            return [
                "There seems to be a temporary connection issue",
                "Please try again in a moment",
            ]
        return [
            "Please try again in a moment",
            "If the problem persists, try asking a simpler cricket question",
        ]

    if code == ErrorCode.RATE_LIMIT_ERROR:
        return [
            "Please wait a moment before asking another question",
        ]

    return []


# =============================================================================
# PAYLOADS
# =============================================================================

def format_result(
    data: List[Dict[str, Any]],
    generated_sql: str,
    execution_time_ms: int,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Payload of the `result` event."""
    metadata = {
        "rowCount": len(data),
        "executionTime": execution_time_ms,
        "generatedSql": generated_sql,
    }
    if request_id:
        metadata["requestId"] = request_id
    return {"data": data, "metadata": metadata}


def format_error(
    message: str,
    code: ErrorCode,
    status: int,
    tips: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Payload of the `error` event."""
    error: Dict[str, Any] = {
        "message": sanitize_error_message(message),
        "code": code.value,
    }

    suggestions = generate_suggestions(code, message)
    if suggestions:
        error["suggestions"] = suggestions
    if tips:
        error["tips"] = list(tips)

    return {"error": error, "status": status}


def format_pipeline_error(error: PipelineError) -> Dict[str, Any]:
    tips = NAME_RESOLUTION_TIPS if isinstance(error, (PlayerNotFoundError, NoStatisticsError)) else None
    return format_error(error.message, error.code, error.status, tips=tips)


def format_server_error() -> Dict[str, Any]:
    return format_error(
        "An unexpected error occurred while processing your cricket question. Please try again.",
        ErrorCode.DATABASE_ERROR,
        500,
    )


def format_ai_configuration_error() -> Dict[str, Any]:
    return format_error("AI service configuration error", ErrorCode.AI_ERROR, 503)

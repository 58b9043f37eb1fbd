"""
Request Validation + Input Sanitization
=======================================

Boundary check for the text-to-SQL endpoint. The raw JSON body is validated
into a TextToSqlRequest (pydantic), reporting only the FIRST violated rule,
then the question is sanitized before it is ever shown to the model.

Sanitization runs after validation succeeds and never fails. It is
idempotent: sanitize(sanitize(x)) == sanitize(x).
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from env_guard import VALID_LEAGUES
from errors import RequestValidationError

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 500

ALLOWED_QUESTION_PATTERN = re.compile(r"^[A-Za-z0-9\s?.,\-'\"()/:%+&]+$")

# Anything outside the allow-list (underscore tolerated, as in identifiers)
_DISALLOWED_CHARS = re.compile(r"[^A-Za-z0-9_\s?.,\-'\"()/:%+&]")
_WHITESPACE_RUN = re.compile(r"\s+")

EMPTY_QUESTION_MESSAGE = "Question cannot be empty"
LONG_QUESTION_MESSAGE = "Question is too long"
INVALID_CHARS_MESSAGE = (
    "Question contains invalid characters. Only letters, numbers, spaces, "
    "parentheses, and common punctuation are allowed."
)
INVALID_FORMAT_MESSAGE = "Invalid request format"


class TextToSqlRequest(BaseModel):
    """Body of POST /text-to-sql."""
    question: str
    league: Optional[str] = None

    @field_validator("question", mode="before")
    @classmethod
    def check_question(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise PydanticCustomError("question_type", "Question must be a string")
        if not value.strip():
            raise PydanticCustomError("question_empty", EMPTY_QUESTION_MESSAGE)
        if len(value) > MAX_QUESTION_LENGTH:
            raise PydanticCustomError("question_too_long", LONG_QUESTION_MESSAGE)
        if not ALLOWED_QUESTION_PATTERN.fullmatch(value):
            raise PydanticCustomError("question_chars", INVALID_CHARS_MESSAGE)
        return value

    @field_validator("league", mode="before")
    @classmethod
    def check_league(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str) or value.strip().upper() not in VALID_LEAGUES:
            raise PydanticCustomError(
                "league_invalid",
                "Invalid league. Valid leagues are: {leagues}",
                {"leagues": ", ".join(VALID_LEAGUES)},
            )
        return value.strip().upper()


@dataclass(frozen=True)
class CricketQuestion:
    """A validated, sanitized question ready for generation."""
    original: str
    sanitized: str
    league: str


def validate_request(raw: Any) -> TextToSqlRequest:
    """
    Validate an untrusted request body.

    Args:
        raw: Decoded JSON body (any type)

    Returns:
        TextToSqlRequest

    Raises:
        RequestValidationError: carrying the first violated rule's message
    """
    if not isinstance(raw, dict):
        raise RequestValidationError(INVALID_FORMAT_MESSAGE)

    if "question" not in raw:
        raise RequestValidationError(EMPTY_QUESTION_MESSAGE)

    try:
        return TextToSqlRequest.model_validate(raw)
    except ValidationError as e:
        errors = e.errors()
        message = errors[0]["msg"] if errors else INVALID_FORMAT_MESSAGE
        logger.debug(f"Request validation failed: {message}")
        raise RequestValidationError(message) from None


def sanitize_input(text: str) -> str:
    """Strip disallowed characters, collapse whitespace runs, trim."""
    cleaned = _DISALLOWED_CHARS.sub("", text)
    cleaned = _WHITESPACE_RUN.sub(" ", cleaned)
    return cleaned.strip()


def parse_question(raw: Any, default_league: str = "WPL") -> CricketQuestion:
    """Validate + sanitize in one step."""
    request = validate_request(raw)
    return CricketQuestion(
        original=request.question,
        sanitized=sanitize_input(request.question),
        league=request.league or default_league,
    )

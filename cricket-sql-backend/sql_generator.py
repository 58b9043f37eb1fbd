"""
Cricket SQL Generation Client
=============================

Turns a sanitized cricket question into candidate PostgreSQL statements using
a Groq-hosted model (llama-index Groq integration).

FLOW:
    question -> [system prompt + user prompt] -> model text
             -> parse_statements (fences, JSON, comment lines, semicolons)
             -> row cap (lookups LIMIT 1, everything else <= MAX_RESULT_ROWS)

The model collaborator is treated as unreliable: slow, rate limited, or
returning prose. Its failures are classified by substring on the error text
because the client gives no structured taxonomy.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

import sqlparse
from llama_index.core.llms import ChatMessage, MessageRole
from llama_index.llms.groq import Groq

from errors import (
    EmptyResponseError,
    GenerationError,
    GenerationRateLimitError,
    GenerationUnavailableError,
    NoStatementsParsedError,
)
from player_name_resolver import is_lookup_statement, validate_sequential_queries
from request_validator import CricketQuestion
from sql_validator import DEFAULT_MAX_ROWS, enforce_row_cap

logger = logging.getLogger(__name__)


# =============================================================================
# SYSTEM PROMPT
# =============================================================================

SYSTEM_PROMPT = """You are a world-class cricket statistics SQL expert. Convert natural language questions about cricket into safe, accurate PostgreSQL queries over the schema below.

CRITICAL SECURITY RULES:
1. ONLY generate SELECT statements. Never INSERT, UPDATE, DELETE, DROP, CREATE, ALTER or any other DDL/DML.
2. ONLY query the tables listed in the schema.
3. NEVER access system tables, information_schema or pg_* objects.
4. Limit results to at most 1000 rows with a LIMIT clause.
5. NEVER call functions with side effects (pg_sleep, random, ...).
6. NEVER use UNION.

DATABASE SCHEMA:
The tables carry a 'wpl_' prefix for historical reasons but hold several leagues (WPL, IPL, BBL, WBBL, SA20). Filter on the 'league' column.

wpl_match: one row per match.
- match_id (INTEGER, PRIMARY KEY)
- league (TEXT): 'WPL', 'IPL', 'BBL', 'WBBL' or 'SA20'
- season (TEXT): e.g. '2023', '2007/08'
- start_date (TIMESTAMP): USE THIS FOR ALL DATE AND SEASON FILTERING
- venue (TEXT)

wpl_delivery: ball-by-ball data, the primary table for statistics.
- id (INTEGER, PRIMARY KEY)
- match_id (INTEGER, FOREIGN KEY to wpl_match.match_id)
- innings (INTEGER): 1 or 2; values > 2 are Super Overs
- ball (TEXT): "over.delivery", e.g. "0.1" is the first ball, "19.6" the last ball of the 20th over
- batting_team (TEXT), bowling_team (TEXT)
- striker (TEXT), non_striker (TEXT), bowler (TEXT)
- runs_off_bat (INTEGER), extras (INTEGER)
- wides (INTEGER), noballs (INTEGER), byes (INTEGER), legbyes (INTEGER), penalty (INTEGER)
- wicket_type (TEXT): NULL if no wicket
- player_dismissed (TEXT): NULL if no wicket
- other_wicket_type (TEXT), other_player_dismissed (TEXT)

wpl_match_info: match metadata.
- match_id (INTEGER, PRIMARY KEY)
- city (TEXT), toss_winner (TEXT), toss_decision (TEXT: 'bat' or 'field')
- player_of_match (TEXT), winner (TEXT)

wpl_team: teams per match.
- match_id (INTEGER), team_name (TEXT)

wpl_player: players per match.
- match_id (INTEGER), team_name (TEXT)
- player_name (TEXT): may be abbreviated, e.g. 'H Kaur'

wpl_official: officials per match.
- match_id (INTEGER), official_type (TEXT), official_name (TEXT)

wpl_person_registry: registry ids per match.
- match_id (INTEGER), person_name (TEXT), registry_id (TEXT)

PLAYER NAME RESOLUTION:
When a question names a specific player you MUST output TWO statements.
The first resolves the canonical player name, the second computes the statistic and uses the placeholder RESOLVED_PLAYER_NAME instead of the name.

For "Harmanpreet Kaur":

SELECT player_name FROM wpl_player WHERE player_name ILIKE '%Kaur%' ORDER BY CASE WHEN player_name ILIKE 'H%Kaur' THEN 1 WHEN player_name ILIKE 'Harmanpreet%Kaur' THEN 2 WHEN player_name ILIKE '%Harmanpreet Kaur%' THEN 3 ELSE 4 END LIMIT 1;

SELECT SUM(d.runs_off_bat) AS total_runs FROM wpl_delivery d JOIN wpl_match m ON d.match_id = m.match_id WHERE d.striker = RESOLVED_PLAYER_NAME AND m.league = 'WPL' AND d.innings <= 2 LIMIT 1000;

HEAD-TO-HEAD (batter vs bowler):
Output THREE statements: the batter lookup, then the bowler lookup, then the matchup query using RESOLVED_BATTER_NAME and RESOLVED_BOWLER_NAME.

For "Mandhana vs Ecclestone":

SELECT player_name FROM wpl_player WHERE player_name ILIKE '%Mandhana%' ORDER BY CASE WHEN player_name ILIKE 'S%Mandhana' THEN 1 WHEN player_name ILIKE 'Smriti%Mandhana' THEN 2 ELSE 3 END LIMIT 1;

SELECT player_name FROM wpl_player WHERE player_name ILIKE '%Ecclestone%' ORDER BY CASE WHEN player_name ILIKE 'S%Ecclestone' THEN 1 WHEN player_name ILIKE 'Sophie%Ecclestone' THEN 2 ELSE 3 END LIMIT 1;

SELECT COALESCE(SUM(d.runs_off_bat), 0) AS runs_scored, COUNT(*) FILTER (WHERE d.wides = 0 AND d.noballs = 0) AS balls_faced, COUNT(CASE WHEN d.player_dismissed = RESOLVED_BATTER_NAME THEN 1 END) AS dismissals FROM wpl_delivery d JOIN wpl_match m ON d.match_id = m.match_id WHERE d.striker = RESOLVED_BATTER_NAME AND d.bowler = RESOLVED_BOWLER_NAME AND d.innings <= 2 LIMIT 1000;

FILTERING RULES:
- LEAGUE: always filter m.league = '<league>' using the league given with the question.
- DATES: use start_date, never the season text. "WPL 2023" means m.league = 'WPL' AND m.start_date >= '2023-01-01' AND m.start_date < '2024-01-01'.
- SUPER OVERS: unless the question asks for super over stats, restrict to innings <= 2.

CRICKET FORMULAS:
- Runs: SUM(runs_off_bat)
- Balls faced: COUNT(CASE WHEN wides = 0 THEN 1 END)
- Strike rate: (SUM(runs_off_bat)::DECIMAL * 100) / NULLIF(COUNT(CASE WHEN wides = 0 THEN 1 END), 0)
- Fours / sixes: runs_off_bat = 4 / runs_off_bat = 6
- Dot balls: runs_off_bat = 0 AND extras = 0
- Runs conceded: SUM(runs_off_bat + wides + noballs)
- Overs bowled: COUNT(id)::DECIMAL / 6
- Wickets (bowler credit): wicket_type IS NOT NULL AND wicket_type NOT IN ('run out', 'retired hurt', 'obstructing the field')
- Economy: SUM(runs_off_bat + wides + noballs) / NULLIF(COUNT(id)::DECIMAL / 6, 0)
- Powerplay: ball < '6.0' (text comparison)
- Death overs: ball >= '15.0' (text comparison)

RESPONSE FORMAT:
Return ONLY the SQL statements, each terminated by a semicolon, in execution order.
No markdown, no comments, no explanations."""


def build_user_prompt(question: str, league: str) -> str:
    return f"League: {league}\nQuestion: {question}"


# =============================================================================
# TEXT GENERATION COLLABORATOR
# =============================================================================

class TextGenerator(ABC):
    """Anything that turns (system prompt, user prompt, temperature) into text."""

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        ...


class GroqTextGenerator(TextGenerator):
    """Groq chat completion through llama-index."""

    def __init__(self, llm: Groq):
        self.llm = llm

    async def generate(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        messages = [
            ChatMessage(role=MessageRole.SYSTEM, content=system_prompt),
            ChatMessage(role=MessageRole.USER, content=user_prompt),
        ]
        response = await self.llm.achat(messages, temperature=temperature)
        return response.message.content or ""


def create_groq_llm(api_key: str, model: str, temperature: float = 0.1) -> Groq:
    """Build the Groq LLM once at startup."""
    return Groq(
        model=model,
        api_key=api_key,
        temperature=temperature,
        max_tokens=1500,
    )


# =============================================================================
# RESPONSE PARSING
# =============================================================================

_FENCED_BLOCK_PATTERN = re.compile(r"```(?:[a-zA-Z]+)?\s*(.*?)```", re.DOTALL)

# Where a statement begins; prose before it is dropped
_STATEMENT_START_PATTERN = re.compile(
    r"^\s*(?:SELECT|WITH|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|TRUNCATE|GRANT|REVOKE|"
    r"EXPLAIN|COPY|CALL|MERGE|EXEC|EXECUTE|DECLARE)\b",
    re.IGNORECASE | re.MULTILINE,
)


def _unwrap_fences(text: str) -> str:
    blocks = _FENCED_BLOCK_PATTERN.findall(text)
    if blocks:
        return "\n".join(blocks)
    return text


def _statements_from_json(text: str) -> Optional[List[str]]:
    """Accept {"queries": [...]} when the model answers in JSON anyway."""
    if not text.lstrip().startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    queries = payload.get("queries") if isinstance(payload, dict) else None
    if not isinstance(queries, list):
        return None
    return [q for q in queries if isinstance(q, str)]


def _clean_statement(statement: str) -> Optional[str]:
    start = _STATEMENT_START_PATTERN.search(statement)
    if not start:
        return None
    statement = statement[start.start():].strip()
    statement = statement.rstrip(";").strip()
    return statement or None


def parse_statements(raw_text: Optional[str]) -> List[str]:
    """
    Parse raw model text into candidate SQL statements.

    Handles:
        - ``` fenced blocks (sql/json or bare)
        - {"queries": [...]} JSON payloads
        - comment-only lines (dropped)
        - prose around statements (dropped)
        - semicolon splitting via sqlparse (literal-aware)

    Raises:
        EmptyResponseError: Response has no content
        NoStatementsParsedError: Nothing statement-like was found
    """
    if raw_text is None or not raw_text.strip():
        raise EmptyResponseError(
            "The AI service returned an empty response. Please try rephrasing your question."
        )

    text = _unwrap_fences(raw_text.strip())

    chunks = _statements_from_json(text)
    if chunks is None:
        lines = [line for line in text.splitlines() if not line.strip().startswith("--")]
        chunks = sqlparse.split("\n".join(lines))

    statements = []
    for chunk in chunks:
        cleaned = _clean_statement(chunk)
        if cleaned:
            statements.append(cleaned)

    if not statements:
        raise NoStatementsParsedError(
            "Could not extract a SQL query from the AI response. Please try rephrasing your question."
        )

    return statements


# =============================================================================
# FAILURE CLASSIFICATION
# =============================================================================

RATE_LIMIT_MESSAGE = "AI service rate limit exceeded. Please try again in a moment."
UNAVAILABLE_MESSAGE = "The AI service is temporarily unavailable. Please try again in a moment."
TIMEOUT_MESSAGE = "Your cricket question took too long to process. Please try a simpler question."
GENERATION_FAILED_MESSAGE = "Failed to generate SQL query. Please try rephrasing your question."


def classify_generation_failure(error: Exception) -> GenerationError:
    """Map a raw client exception to the generation error taxonomy."""
    text = str(error).lower()

    if "rate limit" in text or "quota" in text or "429" in text:
        return GenerationRateLimitError(RATE_LIMIT_MESSAGE)
    if "unavailable" in text or "service" in text:
        return GenerationUnavailableError(UNAVAILABLE_MESSAGE)
    return GenerationError(GENERATION_FAILED_MESSAGE)


# =============================================================================
# GENERATION CLIENT
# =============================================================================

class SQLGenerationClient:
    """
    Question -> candidate statements.

    Constructed once at startup and shared across requests; holds no
    per-request state.
    """

    def __init__(
        self,
        generator: TextGenerator,
        temperature: float = 0.1,
        timeout_seconds: float = 35.0,
        max_rows: int = DEFAULT_MAX_ROWS,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.generator = generator
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.max_rows = max_rows
        self.system_prompt = system_prompt

    async def generate_sql(self, question: CricketQuestion) -> List[str]:
        """
        Generate candidate statements for a question.

        Returns:
            Statements in execution order, row cap applied

        Raises:
            GenerationError (or a subclass) on any failure
        """
        user_prompt = build_user_prompt(question.sanitized, question.league)

        try:
            raw_text = await asyncio.wait_for(
                self.generator.generate(self.system_prompt, user_prompt, self.temperature),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"SQL generation timed out after {self.timeout_seconds}s")
            raise GenerationUnavailableError(TIMEOUT_MESSAGE) from None
        except GenerationError:
            raise
        except Exception as e:
            logger.error(f"SQL generation failed: {e}")
            raise classify_generation_failure(e) from e

        statements = parse_statements(raw_text)
        capped = [self._apply_row_cap(sql) for sql in statements]

        logger.info(f"Generated {len(capped)} statement(s)")
        for i, sql in enumerate(capped, 1):
            logger.debug(f"  [{i}] {sql}")

        return capped

    def validate_sequential_queries(self, statements: List[str]) -> None:
        """Structural lookup-shape check before any execution."""
        validate_sequential_queries(statements)

    def _apply_row_cap(self, sql: str) -> str:
        limit = 1 if is_lookup_statement(sql) else self.max_rows
        return enforce_row_cap(sql, limit).sql

"""
Player Name Resolution - lookup detection and placeholder splicing

Generated SQL for player questions arrives as:
    1. one or two LOOKUP statements against wpl_player (batter first, bowler second)
    2. one MAIN statement referencing RESOLVED_*_NAME placeholder tokens

This module holds the pure parts of that protocol:
    - is_lookup_statement / split_statements: tag statements by shape
    - validate_sequential_queries: structural check before anything executes
    - extract_resolved_name: pick the canonical name out of a lookup row
    - splice_resolved_names: (sql, names) -> sql, the only place placeholders
      are substituted

Nothing here touches the database. The orchestrator in query_pipeline owns
execution order.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from errors import MalformedLookupQueryError, UnresolvedPlaceholderError

logger = logging.getLogger(__name__)


# =============================================================================
# TOKENS + PATTERNS
# =============================================================================

PLAYER_PLACEHOLDER = "RESOLVED_PLAYER_NAME"
BATTER_PLACEHOLDER = "RESOLVED_BATTER_NAME"
BOWLER_PLACEHOLDER = "RESOLVED_BOWLER_NAME"

PLACEHOLDER_TOKENS = (PLAYER_PLACEHOLDER, BATTER_PLACEHOLDER, BOWLER_PLACEHOLDER)

MAX_LOOKUPS = 2

LOOKUP_SHAPE_PATTERN = re.compile(
    r"^\s*SELECT\s+(?:DISTINCT\s+)?(?:\w+\.)?player_name\s+FROM\s+wpl_player\b",
    re.IGNORECASE,
)
ILIKE_PATTERN = re.compile(r"\bILIKE\b", re.IGNORECASE)
PRIORITIZED_ORDER_PATTERN = re.compile(r"\bORDER\s+BY\s+CASE\b", re.IGNORECASE)
SELECT_START_PATTERN = re.compile(r"^\s*(?:SELECT|WITH)\b", re.IGNORECASE)

# Any leftover RESOLVED_<X>_NAME, including ones the model invented
RESIDUAL_PLACEHOLDER_PATTERN = re.compile(r"\bRESOLVED_[A-Z]+_NAME\b", re.IGNORECASE)

STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")

# <alias>.<player column> = '<literal>'
PLAYER_COLUMN_EQUALITY_PATTERN = re.compile(
    r"\b((?:\w+\.)?(striker|non_striker|player_dismissed|bowler))(\s*=\s*)'(?:[^']|'')*'",
    re.IGNORECASE,
)

NAME_KEYS = ("player_name", "playername", "name")


@dataclass(frozen=True)
class ResolvedNames:
    """
    Names resolved by the lookup statements of one request.

    Attributes:
        batter: First resolved name (the only name for single-player questions)
        bowler: Second resolved name, only for batter-vs-bowler questions
    """
    batter: Optional[str] = None
    bowler: Optional[str] = None

    @property
    def is_head_to_head(self) -> bool:
        return self.bowler is not None

    def as_list(self) -> List[str]:
        return [n for n in (self.batter, self.bowler) if n]


# =============================================================================
# SHAPE DETECTION
# =============================================================================

def is_lookup_statement(sql: str) -> bool:
    """True if the statement selects player_name from wpl_player."""
    return bool(sql and LOOKUP_SHAPE_PATTERN.match(sql))


def has_lookup_structure(sql: str) -> bool:
    """A lookup must use a fuzzy ILIKE match and a prioritized ORDER BY CASE."""
    return bool(ILIKE_PATTERN.search(sql) and PRIORITIZED_ORDER_PATTERN.search(sql))


def validate_sequential_queries(statements: List[str]) -> None:
    """
    Structural check on the generated statements, before any execution.

    Rules:
        - With more than one statement, every statement starts with SELECT/WITH
        - Every lookup-shaped statement has ILIKE and ORDER BY CASE
        - Only lookups may precede the main statement, at most two of them

    Raises:
        MalformedLookupQueryError
    """
    if len(statements) > 1:
        for sql in statements:
            if not SELECT_START_PATTERN.match(sql):
                raise MalformedLookupQueryError("All queries must be SELECT statements")

    for sql in statements:
        if is_lookup_statement(sql) and not has_lookup_structure(sql):
            raise MalformedLookupQueryError(
                "Player name resolution query is not properly structured"
            )

    split_statements(statements)


def split_statements(statements: List[str]) -> Tuple[List[str], str]:
    """
    Split generated statements into (lookups, main).

    The main statement is always the last one. Everything before it must be a
    lookup statement, in batter-then-bowler order.

    Raises:
        MalformedLookupQueryError: on an empty list, a non-lookup before the
            main statement, or more than two lookups
    """
    if not statements:
        raise MalformedLookupQueryError("No queries provided")

    lookups = list(statements[:-1])
    main = statements[-1]

    for sql in lookups:
        if not is_lookup_statement(sql):
            raise MalformedLookupQueryError(
                "Only player name lookups may precede the main query"
            )

    if len(lookups) > MAX_LOOKUPS:
        raise MalformedLookupQueryError(
            f"At most {MAX_LOOKUPS} player name lookups are supported, got {len(lookups)}"
        )

    return lookups, main


# =============================================================================
# NAME EXTRACTION
# =============================================================================

def extract_resolved_name(row: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Pick the resolved name out of a lookup result row.

    Priority: player_name, playername, name (case-insensitive keys), then the
    first column of the row. Returns None for a missing row or a blank value.
    """
    if not row:
        return None

    by_lower = {str(key).lower(): value for key, value in row.items()}
    for key in NAME_KEYS:
        if key in by_lower:
            return _clean_name(by_lower[key])

    first_key = next(iter(row))
    logger.warning(
        f"Lookup row has no player_name column, falling back to first column '{first_key}'"
    )
    return _clean_name(row[first_key])


def _clean_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# =============================================================================
# SPLICING
# =============================================================================

def quote_literal(value: str) -> str:
    """Quote a SQL string literal by doubling single quotes."""
    return "'" + value.replace("'", "''") + "'"


def _placeholder_values(names: ResolvedNames) -> dict:
    if names.is_head_to_head:
        return {
            BATTER_PLACEHOLDER: names.batter,
            PLAYER_PLACEHOLDER: names.batter,
            BOWLER_PLACEHOLDER: names.bowler,
        }
    # One player: every token means the same person
    return {token: names.batter for token in PLACEHOLDER_TOKENS}


def _replace_tokens(sql: str, values: dict) -> str:
    """Replace tokens: escaped raw value inside literals, quoted literal elsewhere."""
    pieces = []
    cursor = 0
    for literal in STRING_LITERAL_PATTERN.finditer(sql):
        pieces.append(_replace_in_code(sql[cursor:literal.start()], values))
        pieces.append(_replace_in_literal(literal.group(0), values))
        cursor = literal.end()
    pieces.append(_replace_in_code(sql[cursor:], values))
    return "".join(pieces)


def _replace_in_code(segment: str, values: dict) -> str:
    for token, value in values.items():
        if value:
            segment = re.sub(rf"\b{token}\b", lambda _m, v=value: quote_literal(v), segment)
    return segment


def _replace_in_literal(literal: str, values: dict) -> str:
    for token, value in values.items():
        if value:
            escaped = value.replace("'", "''")
            literal = re.sub(rf"\b{token}\b", lambda _m, v=escaped: v, literal)
    return literal


def _rewrite_player_equalities(sql: str, names: ResolvedNames) -> str:
    """Point stale `<player column> = '<literal>'` clauses at the resolved names."""

    def rewrite(match: re.Match) -> str:
        column = match.group(2).lower()
        if column == "bowler" and names.is_head_to_head:
            value = names.bowler
        else:
            value = names.batter
        return f"{match.group(1)}{match.group(3)}{quote_literal(value)}"

    return PLAYER_COLUMN_EQUALITY_PATTERN.sub(rewrite, sql)


def find_unresolved_placeholders(sql: str) -> List[str]:
    """Every RESOLVED_*_NAME token still present in the SQL (deduplicated)."""
    found = []
    for match in RESIDUAL_PLACEHOLDER_PATTERN.finditer(sql):
        token = match.group(0).upper()
        if token not in found:
            found.append(token)
    return found


def splice_resolved_names(sql: str, names: ResolvedNames) -> str:
    """
    Substitute resolved names into the main statement.

    Steps:
        1. Replace placeholder tokens (literal-aware, quotes doubled)
        2. Rewrite equality clauses on striker / non_striker /
           player_dismissed / bowler to the resolved literal
        3. Fail if any placeholder survives

    Args:
        sql: Main statement as generated
        names: Names resolved from the lookup statements

    Returns:
        Executable SQL with no placeholder tokens

    Raises:
        UnresolvedPlaceholderError
    """
    spliced = sql
    if names.batter:
        spliced = _replace_tokens(spliced, _placeholder_values(names))
        spliced = _rewrite_player_equalities(spliced, names)

    leftover = find_unresolved_placeholders(spliced)
    if leftover:
        logger.warning(f"Placeholders survived splicing: {leftover}")
        raise UnresolvedPlaceholderError(leftover)

    return spliced

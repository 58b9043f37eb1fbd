"""
Cricket SQL - Safety Validation Layer
=====================================

Every generated statement (player lookups AND the final spliced query) passes
through this layer before it reaches the database. Nothing is exempt.

CHECKS (all errors are accumulated, not just the first):
1. Non-empty input
2. Deny-listed keywords (plain substring match on the upper-cased text;
   over-blocking is accepted, e.g. "created_at" trips CREATE)
3. Statement starts with SELECT or WITH
4. No system catalogs / schemas (information_schema, pg_, sys., ...)
5. Every FROM/JOIN target is a WPL cricket table or a CTE defined earlier
6. No classic injection signatures (comment termination, UNION SELECT,
   tautologies, dangerous procedures)

ALSO HERE:
- Row cap enforcement (inject LIMIT when missing, cap when above the maximum)

WHAT THIS IS NOT:
- NOT SQL repair (rejected statements are never executed)
- NOT schema-aware beyond the table allow-list
- NOT a full SQL parser (regex over comment/literal-stripped text)
"""

import re
import logging
import sqlparse
from typing import List, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# =============================================================================
# POLICY
# =============================================================================

DANGEROUS_KEYWORDS = [
    "INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER", "TRUNCATE",
    "EXEC", "EXECUTE", "DECLARE", "GRANT", "REVOKE", "COMMIT", "ROLLBACK",
    "SAVEPOINT", "MERGE", "CALL", "REPLACE", "LOAD", "COPY", "BULK",
    "BACKUP", "RESTORE", "ATTACH", "DETACH",
]

ALLOWED_TABLES = frozenset({
    "wpl_match",
    "wpl_delivery",
    "wpl_match_info",
    "wpl_team",
    "wpl_player",
    "wpl_official",
    "wpl_person_registry",
})

FORBIDDEN_PATTERNS = [
    re.compile(r"information_schema", re.IGNORECASE),
    re.compile(r"pg_", re.IGNORECASE),
    re.compile(r"sys\.", re.IGNORECASE),
    re.compile(r"master\.", re.IGNORECASE),
    re.compile(r"msdb\.", re.IGNORECASE),
    re.compile(r"tempdb\.", re.IGNORECASE),
]

INJECTION_PATTERNS = [
    re.compile(r";\s*--", re.IGNORECASE),
    re.compile(r";\s*/\*", re.IGNORECASE),
    re.compile(r"union\s+select", re.IGNORECASE),
    re.compile(r"'\s*or\s*'1'\s*=\s*'1", re.IGNORECASE),
    re.compile(r"'\s*or\s*1\s*=\s*1", re.IGNORECASE),
    re.compile(r"\bor\s+1\s*=\s*1\b", re.IGNORECASE),
    re.compile(r"xp_cmdshell", re.IGNORECASE),
    re.compile(r"sp_executesql", re.IGNORECASE),
]

EMPTY_SQL_ERROR = "SQL query cannot be empty"
DANGEROUS_KEYWORD_ERROR = "Query contains dangerous keywords. Only SELECT statements are allowed."
NOT_SELECT_ERROR = "Only SELECT queries are allowed"
SYSTEM_ACCESS_ERROR = "Access to system tables/schemas is not allowed"
INJECTION_ERROR = "Query contains potentially malicious patterns"
NO_LIMIT_WARNING = "Query has no LIMIT clause; the row cap will be applied"

DEFAULT_MAX_ROWS = 1000


def table_not_allowed_error(table_name: str) -> str:
    return f"Table '{table_name}' is not allowed. Only WPL cricket tables are accessible."


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class SQLValidationResult:
    """
    Result of SQL safety validation.

    Attributes:
        is_valid: True iff errors is empty
        errors: Every violated rule (accumulated)
        warnings: Non-fatal observations (e.g. missing LIMIT)
    """
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# SAFETY VALIDATOR
# =============================================================================

class SQLSafetyValidator:
    """
    Pure, I/O-free policy check for a single generated statement.

    Table extraction works on a copy of the SQL with comments removed and
    string literals blanked, so 'FROM' inside a literal or comment is ignored.
    """

    # Literal 'text' with '' escapes
    STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")

    # FROM inside EXTRACT(field FROM ...), TRIM(... FROM ...), SUBSTRING(... FROM ...)
    # and IS [NOT] DISTINCT FROM is not a table
    FUNCTION_FROM_PATTERN = re.compile(
        r"\b(?:EXTRACT|TRIM|SUBSTRING)\s*\([^()]*?\bFROM\b", re.IGNORECASE
    )
    DISTINCT_FROM_PATTERN = re.compile(r"\bIS\s+(?:NOT\s+)?DISTINCT\s+FROM\b", re.IGNORECASE)

    FROM_JOIN_PATTERN = re.compile(r"\b(FROM|JOIN)\s+", re.IGNORECASE)
    TABLE_NAME_PATTERN = re.compile(r'"?[A-Za-z_][\w$]*"?(?:\s*\.\s*"?[A-Za-z_][\w$]*"?)*')
    ALIAS_PATTERN = re.compile(
        r"\s+(?:AS\s+)?(?!(?:WHERE|ON|USING|JOIN|LEFT|RIGHT|INNER|OUTER|FULL|CROSS|NATURAL|"
        r"GROUP|ORDER|HAVING|LIMIT|OFFSET|UNION|INTERSECT|EXCEPT|WINDOW|FETCH|FOR|LATERAL)\b)"
        r"[A-Za-z_]\w*",
        re.IGNORECASE,
    )
    COMMA_PATTERN = re.compile(r"\s*,\s*")

    # <name> AS (   or   <name>(col, ...) AS (
    CTE_DEFINITION_PATTERN = re.compile(
        r"\b([A-Za-z_]\w*)\s*(?:\([^()]*\))?\s+AS\s*(?:NOT\s+)?(?:MATERIALIZED\s+)?\(",
        re.IGNORECASE,
    )

    # Words that can follow FROM/JOIN without being a table name
    NON_TABLE_WORDS = {"LATERAL", "ONLY"}

    def validate(self, sql: str) -> SQLValidationResult:
        """
        Validate a statement against the safety policy.

        Args:
            sql: Candidate SQL statement

        Returns:
            SQLValidationResult (is_valid iff no errors)
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not sql or not sql.strip():
            errors.append(EMPTY_SQL_ERROR)
            return SQLValidationResult(is_valid=False, errors=errors, warnings=warnings)

        normalized = sql.strip().upper()

        if self.is_dangerous_query(sql):
            errors.append(DANGEROUS_KEYWORD_ERROR)

        if not (normalized.startswith("SELECT") or normalized.startswith("WITH")):
            errors.append(NOT_SELECT_ERROR)

        if any(pattern.search(sql) for pattern in FORBIDDEN_PATTERNS):
            errors.append(SYSTEM_ACCESS_ERROR)

        errors.extend(self.validate_table_names(sql))

        if any(pattern.search(sql) for pattern in INJECTION_PATTERNS):
            errors.append(INJECTION_ERROR)

        if extract_limit(sql) is None:
            warnings.append(NO_LIMIT_WARNING)

        if errors:
            logger.warning(f"SQL safety validation FAILED: {errors}")
        else:
            logger.debug("SQL safety validation PASSED")

        return SQLValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def is_dangerous_query(self, sql: str) -> bool:
        """Substring match against the deny-list, regardless of word boundaries."""
        upper = sql.upper()
        return any(keyword in upper for keyword in DANGEROUS_KEYWORDS)

    def is_allowed_table(self, table_name: str) -> bool:
        return table_name.lower() in ALLOWED_TABLES

    def validate_table_names(self, sql: str) -> List[str]:
        """Return one error per FROM/JOIN target that is neither allowed nor an earlier CTE."""
        cleaned = self._strip_non_code(sql)
        cte_positions = self._extract_cte_definitions(cleaned)

        errors = []
        seen = set()
        for table_name, position in self._extract_table_references(cleaned):
            key = table_name.lower()
            if self.is_allowed_table(key):
                continue
            if any(name == key and defined_at < position for name, defined_at in cte_positions):
                continue
            if key in seen:
                continue
            seen.add(key)
            errors.append(table_not_allowed_error(table_name))

        return errors

    def _strip_non_code(self, sql: str) -> str:
        """Remove comments, blank literals, neutralize non-table FROM keywords."""
        cleaned = sqlparse.format(sql, strip_comments=True)
        cleaned = self.STRING_LITERAL_PATTERN.sub("''", cleaned)
        cleaned = self.FUNCTION_FROM_PATTERN.sub(lambda m: m.group(0)[:-4] + "OF", cleaned)
        cleaned = self.DISTINCT_FROM_PATTERN.sub("IS DISTINCT_OF", cleaned)
        return cleaned

    def _extract_cte_definitions(self, sql: str) -> List[Tuple[str, int]]:
        return [(m.group(1).lower(), m.start()) for m in self.CTE_DEFINITION_PATTERN.finditer(sql)]

    def _extract_table_references(self, sql: str) -> List[Tuple[str, int]]:
        """
        Extract (table_name, position) for every FROM/JOIN target.

        Handles:
        - FROM table alias / FROM table AS alias
        - Comma-separated FROM lists
        - Schema-qualified and quoted names (schema is stripped)
        - Subqueries (FROM ( ... )) are skipped, including inside a comma list;
          their inner FROMs are found separately
        """
        references = []

        for keyword in self.FROM_JOIN_PATTERN.finditer(sql):
            pos = keyword.end()
            while True:
                if sql.startswith("(", pos):
                    pos = _skip_parenthesized(sql, pos)
                else:
                    match = self.TABLE_NAME_PATTERN.match(sql, pos)
                    if not match:
                        break

                    raw_name = match.group(0)
                    pos = match.end()
                    if raw_name.upper() in self.NON_TABLE_WORDS:
                        ws = re.match(r"\s*", sql[pos:])
                        pos += ws.end()
                        continue

                    name = re.sub(r'[\s"]', "", raw_name).split(".")[-1]
                    references.append((name, match.start()))

                alias = self.ALIAS_PATTERN.match(sql, pos)
                if alias:
                    pos = alias.end()

                comma = self.COMMA_PATTERN.match(sql, pos)
                if keyword.group(1).upper() == "JOIN" or not comma:
                    break
                pos = comma.end()

        return references


def _skip_parenthesized(sql: str, start: int) -> int:
    """Index just past the ')' matching the '(' at start (end of text if unbalanced)."""
    depth = 0
    for index in range(start, len(sql)):
        if sql[index] == "(":
            depth += 1
        elif sql[index] == ")":
            depth -= 1
            if depth == 0:
                return index + 1
    return len(sql)


# =============================================================================
# ROW CAP ENFORCEMENT
# =============================================================================

@dataclass
class RowCapResult:
    """
    Result of row cap enforcement.

    Attributes:
        sql: The SQL with the cap enforced
        limit_applied: Whether the SQL was changed
        original_limit: The LIMIT found in the statement (if any)
        enforced_limit: The LIMIT now in effect
        was_capped: True when an existing LIMIT was reduced
    """
    sql: str
    limit_applied: bool
    original_limit: Optional[int]
    enforced_limit: int
    was_capped: bool = False


_LIMIT_VALUE_PATTERN = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_QUOTED_OR_COMMENT_PATTERN = re.compile(r"'(?:[^']|'')*'|\"[^\"]*\"|--[^\n]*|/\*.*?\*/", re.DOTALL)


def _outer_query_text(sql: str) -> str:
    """
    Same-length copy of sql where only the outermost query is visible.

    Literals, comments and everything inside parentheses (CTE bodies,
    subqueries, function arguments) are blanked, so offsets still line up
    with the original text.
    """
    masked = _QUOTED_OR_COMMENT_PATTERN.sub(lambda m: " " * len(m.group(0)), sql)
    chars = []
    depth = 0
    for ch in masked:
        if ch == "(":
            depth += 1
            chars.append(" ")
        elif ch == ")":
            depth = max(depth - 1, 0)
            chars.append(" ")
        else:
            chars.append(ch if depth == 0 else " ")
    return "".join(chars)


def _find_outer_limit(sql: str) -> Optional[re.Match]:
    return _LIMIT_VALUE_PATTERN.search(_outer_query_text(sql))


def extract_limit(sql: str) -> Optional[int]:
    """
    Extract the LIMIT value of the outermost query.

    A LIMIT inside a CTE or subquery does not count. Returns None if the
    outermost query has no LIMIT clause.
    """
    if not sql:
        return None
    match = _find_outer_limit(sql)
    if match:
        return int(match.group(1))
    return None


def enforce_row_cap(sql: str, max_rows: int = DEFAULT_MAX_ROWS) -> RowCapResult:
    """
    Inject LIMIT when missing, cap it when above max_rows.

    Rules:
    - Existing LIMIT <= max_rows: unchanged (lookups keep LIMIT 1)
    - Existing LIMIT > max_rows: rewritten to max_rows
    - No LIMIT: "LIMIT max_rows" appended (trailing semicolon dropped)
    - Idempotent

    Raises:
        ValueError: If max_rows is not a positive integer
    """
    if not isinstance(max_rows, int) or max_rows <= 0:
        raise ValueError(f"max_rows must be a positive integer, got {max_rows}")

    sql = sql.strip()
    outer = _find_outer_limit(sql)
    original_limit = int(outer.group(1)) if outer else None

    if original_limit is not None:
        if original_limit <= max_rows:
            return RowCapResult(
                sql=sql,
                limit_applied=False,
                original_limit=original_limit,
                enforced_limit=original_limit,
            )

        capped = f"{sql[:outer.start()]}LIMIT {max_rows}{sql[outer.end():]}"
        logger.info(f"[ROW_CAP] Capped LIMIT {original_limit} -> {max_rows}")
        return RowCapResult(
            sql=capped,
            limit_applied=True,
            original_limit=original_limit,
            enforced_limit=max_rows,
            was_capped=True,
        )

    bounded = f"{sql.rstrip(';').rstrip()} LIMIT {max_rows}"
    logger.info(f"[ROW_CAP] Injected LIMIT {max_rows}")
    return RowCapResult(
        sql=bounded,
        limit_applied=True,
        original_limit=None,
        enforced_limit=max_rows,
    )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_default_validator = SQLSafetyValidator()


def validate_sql(sql: str) -> SQLValidationResult:
    """Convenience function to validate one statement."""
    return _default_validator.validate(sql)


def create_safety_validator() -> SQLSafetyValidator:
    """Factory function to create a safety validator."""
    return SQLSafetyValidator()

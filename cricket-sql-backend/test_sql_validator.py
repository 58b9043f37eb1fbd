"""
Tests for the SQL safety validator and row cap enforcement.

Pure string checks - no DB required.
"""

import unittest

from sql_validator import (
    DANGEROUS_KEYWORD_ERROR,
    EMPTY_SQL_ERROR,
    INJECTION_ERROR,
    NO_LIMIT_WARNING,
    NOT_SELECT_ERROR,
    SYSTEM_ACCESS_ERROR,
    SQLSafetyValidator,
    enforce_row_cap,
    extract_limit,
    table_not_allowed_error,
    validate_sql,
)


class TestSafetyValidation(unittest.TestCase):

    def setUp(self):
        self.validator = SQLSafetyValidator()

    # --- Accepted statements ---

    def test_simple_select_is_valid(self):
        result = validate_sql("SELECT * FROM wpl_match WHERE season = '2023' LIMIT 10")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.warnings, [])

    def test_lookup_statement_is_valid(self):
        sql = (
            "SELECT player_name FROM wpl_player WHERE player_name ILIKE '%Kaur%' "
            "ORDER BY CASE WHEN player_name ILIKE 'Kaur' THEN 1 ELSE 2 END LIMIT 1"
        )
        self.assertTrue(validate_sql(sql).is_valid)

    def test_join_of_allowed_tables(self):
        sql = (
            "SELECT d.striker, SUM(d.runs_off_bat) AS runs FROM wpl_delivery d "
            "JOIN wpl_match m ON d.match_id = m.match_id GROUP BY d.striker LIMIT 5"
        )
        self.assertTrue(validate_sql(sql).is_valid)

    def test_cte_defined_earlier_is_exempt(self):
        result = validate_sql("WITH recent AS (SELECT * FROM wpl_match) SELECT * FROM recent")
        self.assertTrue(result.is_valid)

    def test_missing_limit_is_only_a_warning(self):
        result = validate_sql("SELECT * FROM wpl_team")
        self.assertTrue(result.is_valid)
        self.assertIn(NO_LIMIT_WARNING, result.warnings)

    def test_from_inside_literal_is_ignored(self):
        result = validate_sql("SELECT * FROM wpl_match WHERE venue = 'Runs from users' LIMIT 5")
        self.assertTrue(result.is_valid)

    def test_from_inside_comment_is_ignored(self):
        sql = "SELECT * FROM wpl_match /* from users */ LIMIT 5"
        self.assertTrue(validate_sql(sql).is_valid)

    def test_extract_from_is_not_a_table(self):
        sql = "SELECT EXTRACT(YEAR FROM start_date) AS yr FROM wpl_match LIMIT 5"
        self.assertTrue(validate_sql(sql).is_valid)

    def test_schema_qualified_allowed_table(self):
        self.assertTrue(validate_sql("SELECT * FROM public.wpl_match LIMIT 5").is_valid)

    def test_subquery_inner_table_is_checked(self):
        self.assertTrue(validate_sql("SELECT * FROM (SELECT * FROM wpl_match) sub LIMIT 5").is_valid)
        result = validate_sql("SELECT * FROM (SELECT * FROM users) sub LIMIT 5")
        self.assertIn(table_not_allowed_error("users"), result.errors)

    # --- Rejected statements ---

    def test_empty_sql(self):
        result = validate_sql("   ")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [EMPTY_SQL_ERROR])

    def test_chained_drop_is_rejected(self):
        result = validate_sql("SELECT * FROM wpl_match; DROP TABLE wpl_match;")
        self.assertFalse(result.is_valid)
        self.assertIn(DANGEROUS_KEYWORD_ERROR, result.errors)

    def test_delete_accumulates_errors(self):
        result = validate_sql("DELETE FROM wpl_match")
        self.assertIn(DANGEROUS_KEYWORD_ERROR, result.errors)
        self.assertIn(NOT_SELECT_ERROR, result.errors)

    def test_keyword_substring_over_blocks(self):
        # created_at contains CREATE
        result = validate_sql("SELECT created_at FROM wpl_match LIMIT 5")
        self.assertFalse(result.is_valid)
        self.assertIn(DANGEROUS_KEYWORD_ERROR, result.errors)

    def test_lowercase_keyword_is_rejected(self):
        self.assertFalse(validate_sql("select * from wpl_match; truncate wpl_match").is_valid)

    def test_explain_is_rejected(self):
        result = validate_sql("EXPLAIN SELECT * FROM wpl_match")
        self.assertFalse(result.is_valid)
        self.assertIn(NOT_SELECT_ERROR, result.errors)

    def test_unknown_table_is_named(self):
        result = validate_sql("SELECT * FROM users LIMIT 10")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [table_not_allowed_error("users")])
        self.assertIn("users", result.errors[0])

    def test_unknown_table_in_join(self):
        sql = "SELECT * FROM wpl_match m JOIN secrets s ON m.match_id = s.id LIMIT 5"
        self.assertIn(table_not_allowed_error("secrets"), validate_sql(sql).errors)

    def test_unknown_table_in_comma_list(self):
        sql = "SELECT * FROM wpl_match m, users u LIMIT 5"
        self.assertIn(table_not_allowed_error("users"), validate_sql(sql).errors)

    def test_repeated_unknown_table_reported_once(self):
        sql = "SELECT * FROM users a JOIN users b ON a.id = b.id LIMIT 5"
        errors = self.validator.validate_table_names(sql)
        self.assertEqual(errors, [table_not_allowed_error("users")])

    def test_subquery_in_comma_list_does_not_hide_later_tables(self):
        result = validate_sql("SELECT * FROM (SELECT 1 AS x) s, users LIMIT 5")
        self.assertFalse(result.is_valid)
        self.assertIn(table_not_allowed_error("users"), result.errors)

        sql = "SELECT * FROM wpl_match m, (SELECT 1 AS x) s, secrets t LIMIT 5"
        result = validate_sql(sql)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [table_not_allowed_error("secrets")])

    def test_subquery_between_allowed_tables(self):
        sql = "SELECT * FROM wpl_match m, (SELECT COUNT(*) AS n FROM wpl_team) t, wpl_player p LIMIT 5"
        self.assertTrue(validate_sql(sql).is_valid)

    def test_system_schema_is_rejected(self):
        result = validate_sql("SELECT * FROM information_schema.tables LIMIT 5")
        self.assertIn(SYSTEM_ACCESS_ERROR, result.errors)

    def test_pg_catalog_is_rejected(self):
        result = validate_sql("SELECT * FROM pg_catalog.pg_tables LIMIT 5")
        self.assertIn(SYSTEM_ACCESS_ERROR, result.errors)

    def test_union_select_is_rejected(self):
        sql = "SELECT player_name FROM wpl_player UNION SELECT team_name FROM wpl_team LIMIT 5"
        self.assertIn(INJECTION_ERROR, validate_sql(sql).errors)

    def test_tautology_is_rejected(self):
        sql = "SELECT * FROM wpl_player WHERE player_name = 'x' OR 1=1 LIMIT 5"
        self.assertIn(INJECTION_ERROR, validate_sql(sql).errors)

    def test_allowed_table_is_case_insensitive(self):
        self.assertTrue(self.validator.is_allowed_table("WPL_Delivery"))
        self.assertFalse(self.validator.is_allowed_table("wpl_users"))


class TestRowCap(unittest.TestCase):

    def test_limit_injected_when_missing(self):
        result = enforce_row_cap("SELECT * FROM wpl_match", 1000)
        self.assertEqual(result.sql, "SELECT * FROM wpl_match LIMIT 1000")
        self.assertTrue(result.limit_applied)
        self.assertIsNone(result.original_limit)
        self.assertEqual(result.enforced_limit, 1000)

    def test_trailing_semicolon_dropped_before_injection(self):
        result = enforce_row_cap("SELECT * FROM wpl_match;", 1000)
        self.assertEqual(result.sql, "SELECT * FROM wpl_match LIMIT 1000")

    def test_limit_above_cap_is_reduced(self):
        result = enforce_row_cap("SELECT * FROM wpl_match LIMIT 5000", 1000)
        self.assertEqual(result.sql, "SELECT * FROM wpl_match LIMIT 1000")
        self.assertTrue(result.was_capped)
        self.assertEqual(result.original_limit, 5000)

    def test_limit_within_cap_is_kept(self):
        result = enforce_row_cap("SELECT * FROM wpl_match LIMIT 10", 1000)
        self.assertEqual(result.sql, "SELECT * FROM wpl_match LIMIT 10")
        self.assertFalse(result.limit_applied)
        self.assertEqual(result.enforced_limit, 10)

    def test_lookup_keeps_limit_one(self):
        sql = "SELECT player_name FROM wpl_player WHERE player_name ILIKE '%Kaur%' LIMIT 1"
        self.assertEqual(enforce_row_cap(sql, 1).sql, sql)

    def test_idempotent(self):
        once = enforce_row_cap("SELECT * FROM wpl_delivery", 1000).sql
        self.assertEqual(enforce_row_cap(once, 1000).sql, once)

    def test_non_positive_cap_rejected(self):
        with self.assertRaises(ValueError):
            enforce_row_cap("SELECT 1", 0)

    def test_inner_limit_does_not_count(self):
        sql = "WITH t AS (SELECT * FROM wpl_delivery LIMIT 5) SELECT * FROM t, wpl_delivery"
        result = enforce_row_cap(sql, 1000)
        self.assertEqual(result.sql, f"{sql} LIMIT 1000")
        self.assertTrue(result.limit_applied)
        self.assertIsNone(result.original_limit)
        self.assertEqual(result.enforced_limit, 1000)

    def test_outer_limit_is_the_one_capped(self):
        sql = "SELECT * FROM (SELECT * FROM wpl_match LIMIT 5000) s LIMIT 2000"
        result = enforce_row_cap(sql, 1000)
        self.assertEqual(result.sql, "SELECT * FROM (SELECT * FROM wpl_match LIMIT 5000) s LIMIT 1000")
        self.assertEqual(result.original_limit, 2000)

        kept = "SELECT * FROM (SELECT * FROM wpl_match LIMIT 5000) s LIMIT 10"
        self.assertEqual(enforce_row_cap(kept, 1000).sql, kept)

    def test_limit_inside_literal_does_not_count(self):
        sql = "SELECT * FROM wpl_match WHERE venue = 'limit 3'"
        self.assertEqual(enforce_row_cap(sql, 1000).sql, f"{sql} LIMIT 1000")

    def test_extract_limit(self):
        self.assertEqual(extract_limit("SELECT * FROM wpl_match limit 25"), 25)
        self.assertIsNone(extract_limit("SELECT * FROM wpl_match"))
        self.assertIsNone(extract_limit(""))


if __name__ == "__main__":
    unittest.main()

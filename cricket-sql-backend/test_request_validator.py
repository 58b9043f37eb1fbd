"""
Tests for request body validation and question sanitization.
"""

import unittest

from errors import ErrorCode, RequestValidationError
from request_validator import (
    EMPTY_QUESTION_MESSAGE,
    INVALID_CHARS_MESSAGE,
    INVALID_FORMAT_MESSAGE,
    LONG_QUESTION_MESSAGE,
    MAX_QUESTION_LENGTH,
    parse_question,
    sanitize_input,
    validate_request,
)


class TestValidateRequest(unittest.TestCase):

    def assertRejected(self, body, message):
        with self.assertRaises(RequestValidationError) as ctx:
            validate_request(body)
        self.assertEqual(ctx.exception.message, message)
        self.assertEqual(ctx.exception.code, ErrorCode.VALIDATION_ERROR)
        self.assertEqual(ctx.exception.status, 400)

    def test_valid_question(self):
        request = validate_request({"question": "Who scored the most runs in WPL 2023?"})
        self.assertEqual(request.question, "Who scored the most runs in WPL 2023?")
        self.assertIsNone(request.league)

    def test_non_object_body(self):
        self.assertRejected(None, INVALID_FORMAT_MESSAGE)
        self.assertRejected(["question"], INVALID_FORMAT_MESSAGE)
        self.assertRejected("Who scored most runs?", INVALID_FORMAT_MESSAGE)

    def test_missing_question(self):
        self.assertRejected({}, EMPTY_QUESTION_MESSAGE)

    def test_blank_question(self):
        self.assertRejected({"question": ""}, EMPTY_QUESTION_MESSAGE)
        self.assertRejected({"question": "   \n "}, EMPTY_QUESTION_MESSAGE)

    def test_question_must_be_string(self):
        self.assertRejected({"question": 42}, "Question must be a string")

    def test_length_boundary(self):
        validate_request({"question": "a" * MAX_QUESTION_LENGTH})
        self.assertRejected({"question": "a" * (MAX_QUESTION_LENGTH + 1)}, LONG_QUESTION_MESSAGE)

    def test_invalid_characters(self):
        self.assertRejected({"question": "Top scorers; DROP TABLE wpl_match"}, INVALID_CHARS_MESSAGE)
        self.assertRejected({"question": "<script>alert(1)</script>"}, INVALID_CHARS_MESSAGE)

    def test_common_punctuation_allowed(self):
        validate_request({"question": "Kaur's strike-rate (2023/24): 50% & more, right?"})

    def test_league_is_normalized(self):
        request = validate_request({"question": "Top scorers", "league": " ipl "})
        self.assertEqual(request.league, "IPL")

    def test_invalid_league(self):
        with self.assertRaises(RequestValidationError) as ctx:
            validate_request({"question": "Top scorers", "league": "XYZ"})
        self.assertTrue(ctx.exception.message.startswith("Invalid league"))


class TestSanitizeInput(unittest.TestCase):

    def test_collapses_whitespace_and_trims(self):
        self.assertEqual(sanitize_input("  Who   scored\n\nmost  runs?  "), "Who scored most runs?")

    def test_strips_disallowed_characters(self):
        self.assertEqual(sanitize_input("Top runs; please!"), "Top runs please")

    def test_idempotent(self):
        samples = [
            "  Who   scored\tmost runs?  ",
            "Runs <by> Kaur ; ; in 2023",
            "",
            "a ; b",
        ]
        for sample in samples:
            once = sanitize_input(sample)
            self.assertEqual(sanitize_input(once), once)


class TestParseQuestion(unittest.TestCase):

    def test_default_league(self):
        question = parse_question({"question": "  Top   run scorers? "}, default_league="WPL")
        self.assertEqual(question.original, "  Top   run scorers? ")
        self.assertEqual(question.sanitized, "Top run scorers?")
        self.assertEqual(question.league, "WPL")

    def test_request_league_wins(self):
        question = parse_question({"question": "Top run scorers", "league": "BBL"})
        self.assertEqual(question.league, "BBL")


if __name__ == "__main__":
    unittest.main()

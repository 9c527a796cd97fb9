import unittest

from mathduel.app.engine.answers import compare_answers, parse_number
from mathduel.app.models.enums import AnswerType


class TestAnswers(unittest.TestCase):
    def test_parse_number(self):
        self.assertEqual(parse_number("3"), 3.0)
        self.assertEqual(parse_number(" -0.5 "), -0.5)
        self.assertEqual(parse_number("1/4"), 0.25)
        self.assertIsNone(parse_number("1/0"))
        self.assertIsNone(parse_number("pi"))

    def test_exact_is_trimmed_and_case_insensitive(self):
        self.assertTrue(compare_answers("  Euler's Number ", "euler's number", AnswerType.EXACT))
        self.assertFalse(compare_answers("euler", "euler's number", AnswerType.EXACT))

    def test_numeric_tolerance(self):
        self.assertTrue(compare_answers("1.4142", "1.414", AnswerType.NUMERIC))
        self.assertFalse(compare_answers("1.42", "1.414", AnswerType.NUMERIC))

    def test_fraction_matches_decimal(self):
        self.assertTrue(compare_answers("0.5", "1/2", AnswerType.FRACTION))
        self.assertTrue(compare_answers("2/4", "1/2", AnswerType.FRACTION))

    def test_missing_expected_never_matches(self):
        self.assertFalse(compare_answers("42", None, AnswerType.NUMERIC))

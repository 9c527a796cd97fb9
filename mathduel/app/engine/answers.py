import re
from typing import Optional

from mathduel.app.models.enums import AnswerType

_FRACTION = re.compile(r"^(-?\d+)\s*/\s*(\d+)$")
NUMERIC_TOLERANCE = 0.001


def parse_number(text: str) -> Optional[float]:
    """Parses '3', '-0.5' or '1/2' into a float. Returns None otherwise."""
    text = text.strip()
    if "/" not in text:
        try:
            return float(text)
        except ValueError:
            return None

    match = _FRACTION.match(text)
    if match:
        numerator, denominator = int(match.group(1)), int(match.group(2))
        if denominator != 0:
            return numerator / denominator
    return None


def compare_answers(submitted: str, expected: Optional[str], answer_type: Optional[str] = None) -> bool:
    if expected is None or submitted is None:
        return False

    user_clean = submitted.strip().lower()
    correct_clean = expected.strip().lower()

    if answer_type in (AnswerType.NUMERIC, AnswerType.FRACTION):
        user_num = parse_number(user_clean)
        correct_num = parse_number(correct_clean)
        if user_num is not None and correct_num is not None:
            return abs(user_num - correct_num) < NUMERIC_TOLERANCE

    # Exact match is also the fallback for unparsable numeric answers
    return user_clean == correct_clean

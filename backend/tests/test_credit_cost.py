"""
Quiz credit cost table

Credit hours map to a fixed credit charge; anything outside {1, 2, 3}
costs the default 300 credits.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from quiz_access.authorization import credit_hours_to_quiz_credits
from quiz_access.config import DEFAULT_QUIZ_CREDITS


class TestCreditHoursToQuizCredits:

    @pytest.mark.parametrize("hours,credits", [(1, 125), (2, 200), (3, 300)])
    def test_table_values(self, hours, credits):
        """Known credit hours map to their fixed charge."""
        assert credit_hours_to_quiz_credits(hours) == credits

    def test_float_hours_matching_table(self):
        """2.0 hours is 2 hours."""
        assert credit_hours_to_quiz_credits(2.0) == 200

    @pytest.mark.parametrize("hours", [0, -1, -3, 4, 10, 1.5, 2.99, None, "2", [1]])
    def test_everything_else_costs_default(self, hours):
        """Zero, negatives, fractional and unexpected values fall back to 300."""
        assert credit_hours_to_quiz_credits(hours) == DEFAULT_QUIZ_CREDITS == 300

    def test_bool_is_not_an_hour(self):
        """True must not be read as 1 hour."""
        assert credit_hours_to_quiz_credits(True) == 300

    def test_not_monotonic_formula(self):
        """The table is a lookup: 1h is not half of 2h."""
        assert credit_hours_to_quiz_credits(1) * 2 != credit_hours_to_quiz_credits(2)

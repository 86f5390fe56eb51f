"""Tests for cron evaluation."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from jobspine.core.errors import InvalidCronExpressionError
from jobspine.scheduling import next_occurrence, validate_cron_expression


class TestNextOccurrence:
    """Test next_occurrence()."""

    def test_five_field_daily(self):
        after = datetime(2026, 1, 5, 9, 30, tzinfo=UTC)

        assert next_occurrence("0 23 * * *", after) == datetime(2026, 1, 5, 23, 0, tzinfo=UTC)

    def test_strictly_after(self):
        """A start exactly on an occurrence yields the following one."""
        after = datetime(2026, 1, 5, 23, 0, tzinfo=UTC)

        assert next_occurrence("0 23 * * *", after) == datetime(2026, 1, 6, 23, 0, tzinfo=UTC)

    def test_six_field_seconds_first(self):
        """Six-field expressions put seconds first."""
        after = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)

        assert next_occurrence("30 */5 * * * *", after) == datetime(2026, 1, 5, 9, 0, 30, tzinfo=UTC)

    def test_sub_second_start(self):
        after = datetime(2026, 1, 5, 9, 0, 0, 500000, tzinfo=UTC)

        nxt = next_occurrence("* * * * * *", after)

        assert nxt == datetime(2026, 1, 5, 9, 0, 1, tzinfo=UTC)
        assert nxt > after

    def test_result_is_utc(self):
        """Aware inputs in other zones are evaluated in UTC."""
        after = datetime(2026, 1, 5, 10, 0, tzinfo=timezone(timedelta(hours=2)))

        nxt = next_occurrence("0 9 * * *", after)

        assert nxt.tzinfo == UTC
        assert nxt == datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def test_naive_input_treated_as_utc(self):
        nxt = next_occurrence("0 * * * *", datetime(2026, 1, 5, 9, 15))

        assert nxt == datetime(2026, 1, 5, 10, 0, tzinfo=UTC)


class TestValidateCronExpression:
    """Test validate_cron_expression()."""

    @pytest.mark.parametrize("expr", ["0 2 1 * *", "*/15 * * * *", "0 0 2 * * MON-FRI"])
    def test_valid(self, expr):
        assert validate_cron_expression(expr) == expr

    def test_normalises_whitespace(self):
        assert validate_cron_expression("  0   2 * *  * ") == "0 2 * * *"

    @pytest.mark.parametrize("expr", ["", "   ", "* * * *", "* * * * * * *", "61 * * * *", "not a cron"])
    def test_invalid(self, expr):
        with pytest.raises(InvalidCronExpressionError):
            validate_cron_expression(expr)

    def test_next_occurrence_rejects_invalid(self):
        with pytest.raises(InvalidCronExpressionError):
            next_occurrence("bogus", datetime(2026, 1, 1, tzinfo=UTC))

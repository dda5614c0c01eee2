"""
Tests for the statistical analyzer.

Tests cover:
- Histogram and percentage invariants
- Strong / moderate thresholds
- Chi-square lookup
- Edge-triggered strong signal alerts
- Auto-strategy flags
"""
from datetime import datetime

import pytest

from digit_store import DigitStreamStore
from signal_analyzer import (
    STRONG_OVER_3,
    STRONG_UNDER_6,
    SignalAnalyzer,
    StrongSignalTracker,
    analyze_auto_strategy,
    analyze_digits,
    chi_square_test,
    is_high_run,
    is_low_run,
)


def over3_window(over_count: int, total: int = 500):
    """Window with `over_count` sevens and the rest zeros (last digit 0)."""
    return [7] * over_count + [0] * (total - over_count)


class TestAnalyzeDigits:
    def test_requires_500_digits(self):
        assert analyze_digits("R_100", [1] * 499) is None
        assert analyze_digits("R_100", [1] * 500) is not None

    def test_uses_most_recent_500(self):
        digits = [0] * 300 + list(range(10)) * 50
        snapshot = analyze_digits("R_100", digits)
        assert snapshot.ticks_analyzed == 500
        assert snapshot.counts == (50,) * 10

    def test_uniform_window(self):
        snapshot = analyze_digits("R_100", list(range(10)) * 50)

        assert sum(snapshot.percentages) == pytest.approx(100.0)
        assert snapshot.over_3 == pytest.approx(60.0)
        assert snapshot.under_6 == pytest.approx(60.0)
        assert snapshot.even == pytest.approx(50.0)
        assert snapshot.odd == pytest.approx(50.0)
        assert snapshot.chi_square.statistic == 0
        assert snapshot.chi_square.p_value == 1.0
        assert snapshot.chi_square.interpretation == "Uniform (fair)"
        assert snapshot.confidence == 0
        assert snapshot.strong_signal is False
        assert snapshot.strong_signal_type == ""
        assert snapshot.last_digit == 9

    def test_over3_at_66_percent_is_strong(self):
        snapshot = analyze_digits("R_100", over3_window(330))

        assert snapshot.over_3 == pytest.approx(66.0)
        assert snapshot.strong_signal is True
        assert snapshot.strong_signal_type == STRONG_OVER_3
        assert "Strong Over 3 (> 66%)" in snapshot.reasons
        assert snapshot.is_over

    def test_over3_just_below_66_is_moderate(self):
        snapshot = analyze_digits("R_100", over3_window(329))

        assert snapshot.over_3 == pytest.approx(65.8)
        assert snapshot.strong_signal is False
        assert "Moderate Over 3" in snapshot.reasons

    def test_under6_wins_when_both_sides_strong(self):
        snapshot = analyze_digits("R_100", [5] * 500)

        assert snapshot.over_3 == pytest.approx(100.0)
        assert snapshot.under_6 == pytest.approx(100.0)
        assert snapshot.strong_signal_type == STRONG_UNDER_6
        assert not snapshot.is_over

    def test_confidence_is_clamped(self):
        snapshot = analyze_digits("R_100", [5] * 500)
        assert 0 <= snapshot.confidence <= 100
        assert snapshot.hot_digits == (5,)

    def test_entry_points(self):
        snapshot = analyze_digits("R_100", over3_window(350))
        # digit 0 holds 30 % of the window, the other low digits none
        assert snapshot.entry_points_over3 == (0,)
        assert snapshot.entry_points_under6 == (7,)
        assert snapshot.last_digit == 0

    def test_snapshot_to_dict(self):
        snapshot = analyze_digits("R_100", list(range(10)) * 50, now=datetime(2024, 1, 1))
        data = snapshot.to_dict()
        assert data["percentages"]["digit_3"] == 10.0
        assert data["chi_square"]["interpretation"] == "Uniform (fair)"
        assert data["update_time"] == "2024-01-01T00:00:00"


class TestChiSquare:
    def test_no_data(self):
        result = chi_square_test([0] * 10)
        assert result.statistic == 0
        assert result.p_value == 1.0
        assert result.interpretation == "No Data"

    def test_large_deviation_hits_strictest_row(self):
        result = chi_square_test([100, 0, 0, 0, 0, 0, 0, 0, 0, 0])
        assert result.statistic == pytest.approx(900.0)
        assert result.p_value == 0.01
        assert result.interpretation == "Bias detected"

    def test_small_deviation_is_fair(self):
        result = chi_square_test([51, 49, 50, 50, 50, 50, 50, 50, 50, 50])
        assert result.p_value == 1.0
        assert result.interpretation == "Uniform (fair)"


class TestRuns:
    def test_high_run(self):
        assert is_high_run([6, 6, 6, 6, 6])
        assert not is_high_run([6, 6, 6, 6, 5])
        assert not is_high_run([6, 6, 6, 6])

    def test_low_run(self):
        assert is_low_run([9, 0, 1, 2, 3, 4])
        assert not is_low_run([0, 1, 2, 3, 5])


class TestStrongSignalTracker:
    def test_alerts_only_on_rising_edge(self):
        tracker = StrongSignalTracker()
        # over-3 at 60 %, 70 %, 70 %, 55 %, 70 %
        sequence = [300, 350, 350, 275, 350]
        alerts = [tracker.update(analyze_digits("R_100", over3_window(n))) for n in sequence]
        assert alerts == [False, True, False, False, True]

    def test_symbols_are_independent(self):
        tracker = StrongSignalTracker()
        assert tracker.update(analyze_digits("R_100", over3_window(350)))
        assert tracker.update(analyze_digits("R_50", over3_window(350)))


class TestAutoStrategy:
    @staticmethod
    def over1_entry_window():
        # counts: 9 -> 104, 0/1/2/3/5 -> 100, 4/6/7/8 -> 99
        return list(range(10)) * 99 + [0, 1, 2, 3, 9, 9, 9, 9, 9, 5]

    def test_requires_1000_digits(self):
        assert analyze_auto_strategy("R_100", list(range(10)) * 99) is None

    def test_over1_entry(self):
        snapshot = analyze_auto_strategy("R_100", self.over1_entry_window())

        assert snapshot.over1_ready is True
        assert snapshot.over1_entry is True
        assert snapshot.under8_ready is True
        assert snapshot.under8_entry is False
        assert snapshot.most_appearing == 9
        assert snapshot.least_appearing == 8
        assert snapshot.last_digit == 5
        assert snapshot.last_5 == (9, 9, 9, 9, 5)

    def test_extreme_current_digit_blocks_entry(self):
        digits = list(range(10)) * 99 + [0, 1, 2, 3, 9, 9, 9, 5, 5, 5]
        snapshot = analyze_auto_strategy("R_100", digits)
        # 5 is now the most frequent digit
        assert snapshot.most_appearing == 5
        assert snapshot.over1_entry is False

    def test_recovery_flags(self):
        digits = list(range(10)) * 99 + [0, 0, 0, 0, 0, 6, 7, 8, 9, 6]
        snapshot = analyze_auto_strategy("R_100", digits)
        assert snapshot.recovery_over1 is True
        assert snapshot.recovery_under8 is False


class TestSignalAnalyzer:
    def test_run_builds_snapshots_and_alerts(self):
        store = DigitStreamStore()
        store.ingest_history("R_100", [float(f"1.0{d}") for d in over3_window(350)])
        store.ingest_history("R_50", [1.0] * 10)
        analyzer = SignalAnalyzer(store)

        alerts = analyzer.run()
        assert [a.symbol for a in alerts] == ["R_100"]
        assert set(analyzer.get_signals()) == {"R_100"}
        assert analyzer.get_auto_strategy() == {}
        assert analyzer.last_update is not None

        assert analyzer.run() == []

import pytest

from localchat.progress import ProgressEvent, ProgressReporter, to_percentage


class TestProgressReporter:
    def test_clamps_above_one(self):
        assert ProgressReporter().report(1.5, "x").percentage == 100

    def test_clamps_below_zero(self):
        assert ProgressReporter().report(-0.2, "x").percentage == 0

    @pytest.mark.parametrize(
        "fraction,expected",
        [(0.0, 0), (0.254, 25), (0.5, 50), (0.999, 100), (float("nan"), 0), (float("inf"), 100)],
    )
    def test_to_percentage(self, fraction, expected):
        assert to_percentage(fraction) == expected

    def test_notifies_subscribers_in_order(self):
        reporter = ProgressReporter()
        seen = []
        reporter.subscribe(seen.append)
        reporter.report(0.1, "Fetching params")
        reporter.report(0.42, "Loading weights")
        assert seen == [ProgressEvent(10, "Fetching params"), ProgressEvent(42, "Loading weights")]

    def test_unsubscribe(self):
        reporter = ProgressReporter()
        seen = []
        unsubscribe = reporter.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        reporter.report(0.3, "x")
        assert seen == []

    def test_halves_round_up(self):
        reporter = ProgressReporter()
        assert [reporter.report(f, "x").percentage for f in (0.125, 0.025, 0.005)] == [13, 3, 1]

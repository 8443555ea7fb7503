"""Tests for weight graph rendering."""

from datetime import UTC, datetime, timedelta

import pytest

from onionlens.graphs import GRAPH_TYPES, build_graph, format_weights_document
from onionlens.weights import Interval, PathSelectionWeights

NOW = datetime(2013, 4, 24, 12, 0, tzinfo=UTC)
H = timedelta(hours=1)

WEEK = 0
MONTH = 1


def _hourly(first: datetime, last: datetime, value: float = 0.5) -> dict:
    """Hourly intervals ending in ``(first, last]`` with a constant value."""
    history = {}
    end = first + H
    while end <= last:
        history[Interval(end - H, end)] = PathSelectionWeights(*([value] * 5))
        end += H
    return history


class TestBuildGraph:
    """build_graph() slotting, coverage and skipping rules."""

    def test_last_two_days_in_week_window(self) -> None:
        graph = build_graph(_hourly(NOW - 48 * H, NOW), 2, WEEK, NOW)

        assert graph is not None
        assert graph["first"] == "2013-04-22 12:30:00"
        assert graph["last"] == "2013-04-24 11:30:00"
        assert graph["interval"] == 3600
        assert graph["count"] == 48
        assert graph["values"] == [999] * 48
        assert graph["factor"] == pytest.approx(0.5 / 999)

    def test_values_are_scaled_to_maximum(self) -> None:
        history = {
            Interval(NOW - 2 * H, NOW - H): PathSelectionWeights(0, 0, 0.5, 0, 0),
            Interval(NOW - H, NOW): PathSelectionWeights(0, 0, 0.25, 0, 0),
        }

        graph = build_graph(history, 2, WEEK, NOW)

        assert graph is not None
        assert graph["values"] == [999, 499]

    def test_all_zero_values(self) -> None:
        graph = build_graph(_hourly(NOW - 3 * H, NOW, 0.0), 0, WEEK, NOW)

        assert graph is not None
        assert graph["values"] == [0, 0, 0]
        assert graph["factor"] == 0.0

    def test_gap_becomes_null(self) -> None:
        history = _hourly(NOW - 5 * H, NOW)
        del history[Interval(NOW - 3 * H, NOW - 2 * H)]

        graph = build_graph(history, 2, WEEK, NOW)

        assert graph is not None
        assert graph["values"] == [999, 999, None, 999, 999]

    def test_single_point_is_skipped(self) -> None:
        assert build_graph(_hourly(NOW - H, NOW), 2, WEEK, NOW) is None

    def test_no_adjacent_points_is_skipped(self) -> None:
        history = _hourly(NOW - 4 * H, NOW)
        del history[Interval(NOW - 3 * H, NOW - 2 * H)]
        del history[Interval(NOW - H, NOW)]

        assert build_graph(history, 2, WEEK, NOW) is None

    def test_empty_history_is_skipped(self) -> None:
        assert build_graph({}, 2, WEEK, NOW) is None

    def test_low_coverage_point_is_unknown(self) -> None:
        history = _hourly(NOW - 3 * H, NOW)
        # Ten minutes of a one hour point is below the fifth required.
        history[Interval(NOW - 4 * H, NOW - 4 * H + timedelta(minutes=10))] = (
            PathSelectionWeights(*([0.5] * 5))
        )

        graph = build_graph(history, 2, WEEK, NOW)

        assert graph is not None
        assert graph["count"] == 3

    def test_exactly_one_fifth_coverage_is_known(self) -> None:
        history = _hourly(NOW - 3 * H, NOW)
        history[Interval(NOW - 4 * H, NOW - 4 * H + timedelta(minutes=12))] = (
            PathSelectionWeights(*([0.5] * 5))
        )

        graph = build_graph(history, 2, WEEK, NOW)

        assert graph is not None
        assert graph["count"] == 4

    def test_history_before_window_is_ignored(self) -> None:
        history = _hourly(NOW - 20 * 24 * H, NOW - 10 * 24 * H)

        assert build_graph(history, 2, WEEK, NOW) is None

    def test_longer_window_covers_older_history(self) -> None:
        history = _hourly(NOW - 20 * 24 * H, NOW - 10 * 24 * H)

        graph = build_graph(history, 2, MONTH, NOW)

        assert graph is not None
        assert graph["interval"] == 4 * 3600
        assert graph["count"] == 60
        assert graph["first"] == "2013-04-04 14:00:00"

    def test_longer_window_inside_shorter_one_is_skipped(self) -> None:
        assert build_graph(_hourly(NOW - 48 * H, NOW), 2, MONTH, NOW) is None


class TestFormatWeightsDocument:
    """format_weights_document() assembles one graph set per type."""

    def test_document_shape(self) -> None:
        document = format_weights_document("A" * 40, _hourly(NOW - 48 * H, NOW), NOW)

        assert document["fingerprint"] == "A" * 40
        for graph_type in GRAPH_TYPES:
            assert list(document[graph_type]) == ["1_week"]

    def test_empty_history(self) -> None:
        document = format_weights_document("A" * 40, {}, NOW)

        assert all(document[graph_type] == {} for graph_type in GRAPH_TYPES)

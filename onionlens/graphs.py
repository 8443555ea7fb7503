"""Render weight histories into fixed-resolution graph documents."""

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta

from onionlens.models import format_datetime, from_millis, to_millis

GRAPH_TYPES = (
    "advertised_bandwidth_fraction",
    "consensus_weight_fraction",
    "guard_probability",
    "middle_probability",
    "exit_probability",
)

# (name, window length, data point interval), shortest window first.
GRAPH_WINDOWS: tuple[tuple[str, timedelta, timedelta], ...] = (
    ("1_week", timedelta(days=7), timedelta(hours=1)),
    ("1_month", timedelta(days=31), timedelta(hours=4)),
    ("3_months", timedelta(days=92), timedelta(hours=12)),
    ("1_year", timedelta(days=366), timedelta(days=2)),
    ("5_years", timedelta(days=5 * 366), timedelta(days=10)),
)

_MAX_VALUE = 999
# A data point needs at least 1/5 of its interval covered.
_MIN_COVERAGE_DIVISOR = 5


def format_weights_document(
    fingerprint: str,
    history: Mapping[object, Sequence[float]],
    now: datetime,
) -> dict:
    """Build the weights document for one relay.

    Args:
        fingerprint: Relay fingerprint.
        history: Interval (with ``start`` and ``end``) -> five fractions,
            in the order of ``GRAPH_TYPES``.
        now: Reference time the graph windows end at.

    Returns:
        ``{"fingerprint": ..., <graph type>: {<window name>: graph}}``.
    """
    document: dict = {"fingerprint": fingerprint}
    for index, graph_type in enumerate(GRAPH_TYPES):
        graphs = {}
        for window_index in range(len(GRAPH_WINDOWS)):
            graph = build_graph(history, index, window_index, now)
            if graph is not None:
                graphs[GRAPH_WINDOWS[window_index][0]] = graph
        document[graph_type] = graphs
    return document


def build_graph(
    history: Mapping[object, Sequence[float]],
    value_index: int,
    window_index: int,
    now: datetime,
) -> dict | None:
    """Render one component of *history* over one window.

    Each interval is attributed to the data point containing its last
    millisecond.  A data point is the duration-weighted average of its
    intervals, or unknown if they cover less than a fifth of it.

    Returns:
        A dict with ``first``, ``last``, ``interval`` (seconds),
        ``factor``, ``count`` and ``values``, or ``None`` if the window
        adds nothing: no known point, no two adjacent known points, or a
        first point inside the next shorter window.
    """
    _, length, step = GRAPH_WINDOWS[window_index]
    now_millis = to_millis(now)
    step_millis = step // timedelta(milliseconds=1)
    origin_slot = (now_millis - length // timedelta(milliseconds=1)) // step_millis

    weighted: dict[int, float] = {}
    covered: dict[int, int] = {}
    for interval, values in history.items():
        start = to_millis(interval.start)
        end = to_millis(interval.end)
        slot = (end - 1) // step_millis - origin_slot
        if slot < 0:
            continue
        weighted[slot] = weighted.get(slot, 0.0) + values[value_index] * (end - start)
        covered[slot] = covered.get(slot, 0) + (end - start)

    points: list[float | None] = []
    for slot in range(max(covered, default=-1) + 1):
        total = covered.get(slot, 0)
        if total * _MIN_COVERAGE_DIVISOR < step_millis:
            points.append(None)
        else:
            points.append(weighted[slot] / total)

    known = [i for i, point in enumerate(points) if point is not None]
    if not known:
        return None
    first_index, last_index = known[0], known[-1]
    if not any(b - a == 1 for a, b in zip(known, known[1:])):
        return None

    first_millis = (origin_slot + first_index) * step_millis + step_millis // 2
    if window_index > 0:
        shorter = GRAPH_WINDOWS[window_index - 1][1]
        if first_millis >= now_millis - shorter // timedelta(milliseconds=1):
            return None

    max_value = max(points[i] for i in known)
    values = [
        None if point is None else _scale(point, max_value)
        for point in points[first_index : last_index + 1]
    ]
    return {
        "first": format_datetime(from_millis(first_millis)),
        "last": format_datetime(
            from_millis(first_millis + (last_index - first_index) * step_millis)
        ),
        "interval": step_millis // 1000,
        "factor": max_value / _MAX_VALUE,
        "count": len(values),
        "values": values,
    }


def _scale(value: float, max_value: float) -> int:
    if max_value <= 0:
        return 0
    return int(value * _MAX_VALUE / max_value)

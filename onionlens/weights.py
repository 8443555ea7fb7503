"""Weights engine: path-selection probabilities and compressed weight histories.

For every consensus the engine computes five fractions per running relay
(advertised bandwidth, consensus weight, and guard/middle/exit probability)
and appends them to the relay's ``WeightsStatus`` as one interval covering
``[valid_after, fresh_until)``.  Histories are compressed after every
append so that old data is kept at a coarser resolution than new data.
"""

import json
import logging
import sqlite3
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NamedTuple

from onionlens.graphs import format_weights_document
from onionlens.models import (
    ConsensusSnapshot,
    ServerDescriptor,
    format_datetime,
    parse_datetime,
    to_millis,
)
from onionlens.persistence import WEIGHTS, WEIGHTS_STATUS, DocumentStore

logger = logging.getLogger(__name__)

BANDWIDTH_WEIGHT_KEYS = ("Wgg", "Wgd", "Wmg", "Wmm", "Wme", "Wmd", "Wee", "Wed")

# (maximum age of an interval's end, bucket width), youngest first.
COMPRESSION_BUCKETS: tuple[tuple[timedelta, timedelta], ...] = (
    (timedelta(days=7), timedelta(hours=1)),
    (timedelta(days=31), timedelta(hours=4)),
    (timedelta(days=92), timedelta(hours=12)),
    (timedelta(days=366), timedelta(days=2)),
)
OLDEST_BUCKET = timedelta(days=10)


class PathSelectionWeights(NamedTuple):
    """The five fractions stored per history interval."""

    advertised_bandwidth_fraction: float
    consensus_weight_fraction: float
    guard_probability: float
    middle_probability: float
    exit_probability: float


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open time interval ``[start, end)``.

    Intervals order by start, then end, and are hashable so they can key
    a history mapping.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Interval end {self.end} is not after start {self.start}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        """Whether the two intervals share any instant."""
        return self.start < other.end and other.start < self.end


def compression_bucket(age: timedelta) -> timedelta:
    """Return the bucket width for history data of the given age."""
    for max_age, width in COMPRESSION_BUCKETS:
        if age <= max_age:
            return width
    return OLDEST_BUCKET


@dataclass
class WeightsStatus:
    """Persisted per-relay weights state.

    Attributes:
        history: Disjoint intervals mapped to their weights, in order.
        advertised_bandwidths: Server-descriptor digest -> advertised
            bandwidth, for every descriptor seen from this relay.
    """

    history: dict[Interval, PathSelectionWeights] = field(default_factory=dict)
    advertised_bandwidths: dict[str, int] = field(default_factory=dict)

    def add(self, interval: Interval, weights: PathSelectionWeights) -> bool:
        """Insert *interval* unless it overlaps an existing one.

        Overlapping intervals are rejected so that processing the same
        consensus twice has no effect.

        Returns:
            True if the interval was inserted.
        """
        if any(interval.overlaps(existing) for existing in self.history):
            return False
        self.history[interval] = weights
        self.history = dict(sorted(self.history.items()))
        return True

    def compress(self, now: datetime) -> None:
        """Merge adjacent intervals that fall into the same bucket.

        Two neighbours merge into one duration-weighted interval if they
        are contiguous, if their ends round to the same bucket for the
        younger one's age relative to *now*, and if they start in the same
        UTC calendar month.  Compressing twice with the same *now* is a
        no-op.
        """
        compressed: dict[Interval, PathSelectionWeights] = {}
        last: Interval | None = None
        last_weights: PathSelectionWeights | None = None
        last_month: tuple[int, int] | None = None

        for interval, weights in sorted(self.history.items()):
            month = (interval.start.year, interval.start.month)
            bucket = compression_bucket(now - interval.end)
            if (
                last is not None
                and last.end == interval.start
                and _bucket_index(last.end, bucket) == _bucket_index(interval.end, bucket)
                and last_month == month
            ):
                last_weights = _weighted_average(last, last_weights, interval, weights)
                last = Interval(last.start, interval.end)
            else:
                if last is not None:
                    compressed[last] = last_weights
                last, last_weights = interval, weights
            last_month = month

        if last is not None:
            compressed[last] = last_weights
        self.history = compressed

    def to_json(self) -> str:
        """Serialize to the JSON document kept in the store."""
        return json.dumps(
            {
                "advertised_bandwidths": dict(sorted(self.advertised_bandwidths.items())),
                "history": [
                    [format_datetime(i.start), format_datetime(i.end), list(w)]
                    for i, w in self.history.items()
                ],
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "WeightsStatus":
        """Parse a stored document.

        Raises:
            ValueError: If the document is not valid JSON or has the wrong
                shape.
        """
        try:
            raw = json.loads(text)
            history = {
                Interval(parse_datetime(start), parse_datetime(end)):
                    PathSelectionWeights(*(float(v) for v in values))
                for start, end, values in raw.get("history", [])
            }
            advertised = {
                str(digest): int(bandwidth)
                for digest, bandwidth in raw.get("advertised_bandwidths", {}).items()
            }
        except (AttributeError, TypeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Malformed weights status: {exc}") from exc
        return cls(history=dict(sorted(history.items())), advertised_bandwidths=advertised)


def read_bandwidth_weights(raw: Mapping[str, int] | None) -> dict[str, float]:
    """Return the eight bandwidth-weight factors as fractions.

    All-or-nothing: unless every one of ``BANDWIDTH_WEIGHT_KEYS`` is
    present, every factor defaults to 1.0.
    """
    if raw is None or any(key not in raw for key in BANDWIDTH_WEIGHT_KEYS):
        return dict.fromkeys(BANDWIDTH_WEIGHT_KEYS, 1.0)
    return {key: raw[key] / 10000.0 for key in BANDWIDTH_WEIGHT_KEYS}


class HistoryUpdater:
    """Apply one consensus interval to many relays' histories.

    Worker threads draw fingerprints one at a time from a shared pending
    queue; taking an item is the only operation that needs the lock.  Each
    worker then runs *update* for its relay without touching any other
    shared state, so the result is the same for any number of workers.

    Args:
        interval: Interval to add to every history.
        pending: Fingerprint -> weights to add.
        update: Callable performing the full read/insert/compress/store
            cycle for one relay; returns whether a new interval was stored.
        workers: Number of worker threads.  With 1 the work runs in the
            calling thread.
    """

    def __init__(
        self,
        interval: Interval,
        pending: Mapping[str, PathSelectionWeights],
        update: Callable[[str, Interval, PathSelectionWeights], bool],
        workers: int = 1,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self._interval = interval
        self._pending = deque(sorted(pending.items()))
        self._update = update
        self._workers = workers
        self._lock = threading.Lock()

    def run(self) -> set[str]:
        """Process every pending fingerprint.

        Returns:
            Fingerprints whose history received a new interval.
        """
        results: list[list[str]] = [[] for _ in range(self._workers)]
        if self._workers == 1:
            self._work(results[0])
        else:
            threads = [
                threading.Thread(target=self._work, args=(out,), daemon=True)
                for out in results
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        return {fingerprint for out in results for fingerprint in out}

    def _take(self) -> tuple[str, PathSelectionWeights] | None:
        with self._lock:
            if not self._pending:
                return None
            return self._pending.popleft()

    def _work(self, updated: list[str]) -> None:
        while (item := self._take()) is not None:
            fingerprint, weights = item
            if self._update(fingerprint, self._interval, weights):
                updated.append(fingerprint)


class WeightsEngine:
    """Collects consensuses and server descriptors, then updates histories.

    Args:
        store: Document store holding ``WeightsStatus`` and graph
            documents.
        now: Reference time for compression and graph rendering.
        workers: Number of history-update worker threads.
    """

    def __init__(self, store: DocumentStore, now: datetime, workers: int = 1) -> None:
        self._store = store
        self._now = now
        self._workers = workers
        self._consensuses: list[ConsensusSnapshot] = []
        self._advertised_bandwidths: dict[str, int] = {}
        self._digests_by_fingerprint: dict[str, set[str]] = {}
        self._touched: set[str] = set()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def add_server_descriptor(self, descriptor: ServerDescriptor) -> None:
        """Remember a descriptor's advertised bandwidth by digest."""
        digest = descriptor.digest.upper()
        self._advertised_bandwidths[digest] = descriptor.advertised_bandwidth
        self._digests_by_fingerprint.setdefault(descriptor.fingerprint, set()).add(digest)
        self._touched.add(descriptor.fingerprint)

    def add_consensus(self, consensus: ConsensusSnapshot) -> None:
        self._consensuses.append(consensus)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def update(self) -> set[str]:
        """Update histories for all collected consensuses and persist
        descriptor digests.

        Returns:
            Fingerprints of every relay whose stored status was written.
        """
        updated: set[str] = set()
        for consensus in sorted(self._consensuses, key=lambda c: c.valid_after):
            updated |= self.update_history(consensus)
        self._consensuses.clear()
        updated |= self._update_statuses(self._touched - updated)
        logger.info("Updated weights statuses of %d relays", len(updated))
        return updated

    def calculate_path_selection_probabilities(
        self, consensus: ConsensusSnapshot
    ) -> dict[str, PathSelectionWeights]:
        """Compute the five fractions for every running relay.

        Relays without the ``Running`` flag get no entry.  A total of zero
        makes every fraction of that quantity zero.
        """
        w = read_bandwidth_weights(consensus.bandwidth_weights)
        raw: dict[str, tuple[float, float, float, float, float]] = {}

        for entry in consensus.entries:
            if "Running" not in entry.flags:
                continue
            is_exit = "Exit" in entry.flags and "BadExit" not in entry.flags
            is_guard = "Guard" in entry.flags
            weight = float(max(entry.consensus_weight, 0))

            if is_guard and is_exit:
                factors = (w["Wgd"], w["Wmd"], w["Wed"])
            elif is_guard:
                factors = (w["Wgg"], w["Wmg"], 0.0)
            elif is_exit:
                factors = (0.0, w["Wme"], w["Wee"])
            else:
                factors = (0.0, w["Wmm"], 0.0)

            raw[entry.fingerprint] = (
                float(self._advertised_bandwidth(entry.fingerprint, entry.descriptor_digest)),
                weight,
                weight * factors[0],
                weight * factors[1],
                weight * factors[2],
            )

        totals = [sum(values[i] for values in raw.values()) for i in range(5)]
        return {
            fingerprint: PathSelectionWeights(
                *(_fraction(v, total) for v, total in zip(values, totals))
            )
            for fingerprint, values in raw.items()
        }

    def update_history(self, consensus: ConsensusSnapshot) -> set[str]:
        """Add one consensus interval to every running relay's history.

        Returns:
            Fingerprints whose history received the interval.
        """
        interval = Interval(consensus.valid_after, consensus.fresh_until)
        weights = self.calculate_path_selection_probabilities(consensus)
        updater = HistoryUpdater(interval, weights, self.add_to_history, self._workers)
        updated = updater.run()
        logger.debug(
            "Added interval %s..%s to %d of %d histories",
            interval.start,
            interval.end,
            len(updated),
            len(weights),
        )
        return updated

    def add_to_history(
        self, fingerprint: str, interval: Interval, weights: PathSelectionWeights
    ) -> bool:
        """Read, extend, compress and store one relay's weights status.

        Storage failures are logged and the relay is skipped.

        Returns:
            True if a new interval was stored.
        """
        try:
            status = self._retrieve_status(fingerprint) or WeightsStatus()
            if not status.add(interval, weights):
                return False
            status.compress(self._now)
            self._add_advertised_bandwidths(status, fingerprint)
            self._store.store(WEIGHTS_STATUS, fingerprint, status.to_json())
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("Could not update weights history of %s: %s", fingerprint, exc)
            return False
        return True

    def write_documents(self, fingerprints: set[str]) -> int:
        """Render and store weight graph documents.

        Returns:
            Number of documents written.
        """
        written = 0
        for fingerprint in sorted(fingerprints):
            try:
                status = self._retrieve_status(fingerprint)
                if status is None:
                    continue
                document = format_weights_document(fingerprint, status.history, self._now)
                self._store.store(WEIGHTS, fingerprint, json.dumps(document))
            except (sqlite3.Error, ValueError) as exc:
                logger.warning("Could not write weights document of %s: %s", fingerprint, exc)
                continue
            written += 1
        return written

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _advertised_bandwidth(self, fingerprint: str, digest: str | None) -> int:
        """Resolve advertised bandwidth, consulting the stored digest cache
        if this pass has not seen the descriptor."""
        if digest is None:
            return 0
        digest = digest.upper()
        if digest not in self._advertised_bandwidths:
            try:
                status = self._retrieve_status(fingerprint)
            except (sqlite3.Error, ValueError) as exc:
                logger.warning("Could not read weights status of %s: %s", fingerprint, exc)
                status = None
            if status is not None:
                self._digests_by_fingerprint.setdefault(fingerprint, set()).update(
                    status.advertised_bandwidths
                )
                self._advertised_bandwidths.update(status.advertised_bandwidths)
        return self._advertised_bandwidths.get(digest, 0)

    def _add_advertised_bandwidths(self, status: WeightsStatus, fingerprint: str) -> None:
        for digest in self._digests_by_fingerprint.get(fingerprint, ()):
            if digest in self._advertised_bandwidths:
                status.advertised_bandwidths[digest] = self._advertised_bandwidths[digest]

    def _update_statuses(self, fingerprints: set[str]) -> set[str]:
        """Persist new descriptor digests for relays without a new interval."""
        written: set[str] = set()
        for fingerprint in sorted(fingerprints):
            try:
                status = self._retrieve_status(fingerprint) or WeightsStatus()
                self._add_advertised_bandwidths(status, fingerprint)
                self._store.store(WEIGHTS_STATUS, fingerprint, status.to_json())
            except (sqlite3.Error, ValueError) as exc:
                logger.warning("Could not update weights status of %s: %s", fingerprint, exc)
                continue
            written.add(fingerprint)
        self._touched.clear()
        return written

    def _retrieve_status(self, fingerprint: str) -> WeightsStatus | None:
        text = self._store.retrieve(WEIGHTS_STATUS, fingerprint)
        if text is None:
            return None
        return WeightsStatus.from_json(text)


def _bucket_index(moment: datetime, bucket: timedelta) -> int:
    """Index of the bucket containing the last millisecond before *moment*."""
    return (to_millis(moment) - 1) // (bucket // timedelta(milliseconds=1))


def _weighted_average(
    first: Interval,
    first_weights: PathSelectionWeights,
    second: Interval,
    second_weights: PathSelectionWeights,
) -> PathSelectionWeights:
    a = first.duration.total_seconds()
    b = second.duration.total_seconds()
    return PathSelectionWeights(
        *((x * a + y * b) / (a + b) for x, y in zip(first_weights, second_weights))
    )


def _fraction(value: float, total: float) -> float:
    return value / total if total > 0 else 0.0

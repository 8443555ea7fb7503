"""Resource API: answer summary requests from the persisted out summary."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from onionlens.models import from_millis
from onionlens.persistence import OUT_SUMMARY, OUT_UPDATE, DocumentStore
from onionlens.query import QueryError, QueryRecord, parse_query, summary_document
from onionlens.registry import NodeRegistry

logger = logging.getLogger(__name__)

SUMMARY_PATH = "/summary"


@dataclass
class ApiResponse:
    """Status code plus JSON-serializable body."""

    status: int
    body: dict


@dataclass
class SummaryIndex:
    """Point-in-time, read-only view of the out summary.

    Attributes:
        relays: Relay records in fingerprint order.
        bridges: Bridge records in fingerprint order.
        relays_published: Latest relay last-seen time.
        bridges_published: Latest bridge last-seen time.
        updated_at: Time the summary was written; day ranges are
            measured from here.
    """

    relays: list[QueryRecord]
    bridges: list[QueryRecord]
    relays_published: datetime | None
    bridges_published: datetime | None
    updated_at: datetime

    @classmethod
    def load(cls, store: DocumentStore) -> "SummaryIndex | None":
        """Read the out summary and update time.

        Returns:
            The index, or ``None`` if no summary has been written yet.
        """
        text = store.retrieve(OUT_SUMMARY)
        update = store.retrieve(OUT_UPDATE)
        if text is None or update is None:
            return None
        try:
            updated_at = from_millis(int(update.strip()))
        except ValueError:
            logger.warning("Ignoring malformed update time %r", update)
            return None

        registry = NodeRegistry()
        registry.load_summary(text)
        registry.recompute_running_bits("relay")
        registry.recompute_running_bits("bridge")
        return cls(
            relays=[QueryRecord.from_node(r) for r in registry.current_view("relay").values()],
            bridges=[QueryRecord.from_node(r) for r in registry.current_view("bridge").values()],
            relays_published=registry.latest_snapshot_time("relay"),
            bridges_published=registry.latest_snapshot_time("bridge"),
            updated_at=updated_at,
        )


def handle_request(
    path: str,
    params: Mapping[str, Sequence[str]],
    store: DocumentStore,
) -> ApiResponse:
    """Answer one request.

    Args:
        path: Request path; only ``/summary`` exists (case-sensitive).
        params: Parameter name -> values in request order.
        store: Document store holding the out summary.

    Returns:
        200 with the summary document, 400 for malformed parameters, 404
        for unknown paths, or 503 if no summary has been written yet.
    """
    if path != SUMMARY_PATH:
        return ApiResponse(404, {"error": f"Unknown resource {path!r}"})

    try:
        query = parse_query(params)
    except QueryError as exc:
        logger.info("Rejected request %s: %s", path, exc)
        return ApiResponse(400, {"error": str(exc)})

    index = SummaryIndex.load(store)
    if index is None:
        return ApiResponse(503, {"error": "No summary available yet"})

    relays, bridges = query.evaluate(index.relays, index.bridges, index.updated_at)
    return ApiResponse(
        200,
        summary_document(
            relays, bridges, index.relays_published, index.bridges_published
        ),
    )

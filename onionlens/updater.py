"""Update pipeline: read new snapshots, merge, enrich, weigh, persist."""

import logging
import time
from datetime import UTC, datetime, timedelta

from onionlens.config import OnionlensConfig
from onionlens.dns import reverse_lookup_all
from onionlens.geoip import lookup_addresses
from onionlens.models import to_millis
from onionlens.persistence import (
    OUT_SUMMARY,
    OUT_UPDATE,
    STATUS_SUMMARY,
    WEIGHTS,
    WEIGHTS_STATUS,
    DocumentStore,
    UpdateRun,
    save_update_run,
)
from onionlens.registry import CURRENT_WINDOW, NodeRegistry
from onionlens.sources import DescriptorSource
from onionlens.weights import WeightsEngine

logger = logging.getLogger(__name__)

# Host names are looked up again once their last lookup is this old.
RDNS_REFRESH = timedelta(hours=12)


def run_update(
    config: OnionlensConfig,
    store: DocumentStore,
    source: DescriptorSource,
    now: datetime | None = None,
) -> UpdateRun:
    """Run one update pass.

    Args:
        config: Loaded application configuration.
        store: Document store holding all persisted state.
        source: Feed of new snapshot documents.
        now: Reference time for weight compression, graphs and host-name
            refresh.  Defaults to the current UTC time.

    Returns:
        The persisted ``UpdateRun`` record.
    """
    now = now or datetime.now(UTC)
    t0 = time.monotonic()

    registry = NodeRegistry()
    loaded = registry.load_summary(store.retrieve(STATUS_SUMMARY))
    logger.info("Loaded %d known nodes", loaded)

    pool_assignments = list(source.read_pool_assignments())
    descriptors = list(source.read_server_descriptors())
    consensuses = list(source.read_consensuses())
    bridge_statuses = list(source.read_bridge_statuses())
    logger.info(
        "Read %d consensuses, %d bridge statuses, %d server descriptors, "
        "%d pool assignments",
        len(consensuses),
        len(bridge_statuses),
        len(descriptors),
        len(pool_assignments),
    )

    for consensus in consensuses:
        registry.ingest_consensus(consensus)
    for status in bridge_statuses:
        registry.ingest_bridge_status(status)
    registry.apply_server_descriptors(descriptors)
    registry.apply_pool_assignments(pool_assignments)

    _enrich_relays(registry, config, now)

    registry.recompute_running_bits("relay")
    registry.recompute_running_bits("bridge")

    engine = WeightsEngine(store, now, workers=config.history_workers)
    for descriptor in descriptors:
        engine.add_server_descriptor(descriptor)
    for consensus in consensuses:
        engine.add_consensus(consensus)
    updated = engine.update()
    documents = engine.write_documents(updated)

    store.store(STATUS_SUMMARY, "", registry.dump_summary(include_old=True))
    store.store(OUT_SUMMARY, "", registry.dump_summary(include_old=False))
    store.store(OUT_UPDATE, "", str(to_millis(now)))

    update_run = UpdateRun(
        relay_count=len(registry.current_view("relay")),
        bridge_count=len(registry.current_view("bridge")),
        duration_seconds=time.monotonic() - t0,
        meta={
            "consensuses": len(consensuses),
            "bridge_statuses": len(bridge_statuses),
            "server_descriptors": len(descriptors),
            "pool_assignments": len(pool_assignments),
            "weights_documents": documents,
        },
    )
    save_update_run(store.connection, update_run)
    logger.info(
        "Update finished: %d relays, %d bridges in %.1fs",
        update_run.relay_count,
        update_run.bridge_count,
        update_run.duration_seconds,
    )
    return update_run


def _enrich_relays(
    registry: NodeRegistry, config: OnionlensConfig, now: datetime
) -> None:
    """Look up country, AS and host name for relays in the current view."""
    relays = registry.current_view("relay").values()
    addresses = {relay.address for relay in relays}
    if not addresses:
        return

    if config.maxmind_city_db or config.maxmind_asn_db:
        registry.apply_lookups(lookup_addresses(addresses, config))

    if config.reverse_dns:
        stale_before = to_millis(now - RDNS_REFRESH)
        stale = {
            relay.address
            for relay in relays
            if relay.last_rdns_lookup < stale_before
        }
        if stale:
            registry.apply_host_names(reverse_lookup_all(stale), to_millis(now))


def prune_store(store: DocumentStore, days: int) -> dict[str, int]:
    """Delete nodes not seen for *days* days, with their weight documents.

    Ages are measured from the latest snapshot of each kind, so records
    still in the current view are never removed.

    Args:
        store: Document store holding the status summary.
        days: Minimum age in days; must cover the current-view window.

    Returns:
        Counts of removed ``relays``, ``bridges`` and ``documents``.

    Raises:
        ValueError: If *days* is shorter than the current-view window.
    """
    max_age = timedelta(days=days)
    if max_age < CURRENT_WINDOW:
        raise ValueError(
            f"days must be at least {CURRENT_WINDOW.days}, got {days}"
        )

    registry = NodeRegistry()
    registry.load_summary(store.retrieve(STATUS_SUMMARY))
    removed = {"relays": 0, "bridges": 0, "documents": 0}
    for kind, label in (("relay", "relays"), ("bridge", "bridges")):
        latest = registry.latest_snapshot_time(kind)
        if latest is not None:
            removed[label] = registry.prune(kind, latest - max_age)
    store.store(STATUS_SUMMARY, "", registry.dump_summary(include_old=True))

    relays = registry.records("relay")
    for doc_type in (WEIGHTS_STATUS, WEIGHTS):
        for fingerprint in store.keys(doc_type):
            if fingerprint not in relays and store.remove(doc_type, fingerprint):
                removed["documents"] += 1
    logger.info(
        "Pruned %d relays, %d bridges and %d weight documents",
        removed["relays"],
        removed["bridges"],
        removed["documents"],
    )
    return removed

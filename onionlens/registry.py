"""Node registry: merges snapshot observations into one record per node."""

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from onionlens.models import (
    BridgeStatusSnapshot,
    ConsensusSnapshot,
    NodeKind,
    NodeRecord,
    PoolAssignment,
    ServerDescriptor,
    StatusEntry,
)
from onionlens.summary import format_summary_line, parse_summary_line

logger = logging.getLogger(__name__)

CURRENT_WINDOW = timedelta(days=7)

# Fields that describe the node as of its most recent observation.  An
# older observation never overrides them.
_DESCRIPTIVE_FIELDS = (
    "nickname",
    "address",
    "or_port",
    "dir_port",
    "last_seen",
    "or_addresses",
    "exit_addresses",
    "flags",
    "consensus_weight",
    "country_code",
    "as_number",
    "default_policy",
    "port_list",
    "contact",
    "pool_assignment",
)


class NodeRegistry:
    """Consolidated per-node state for relays and bridges.

    Records are keyed by fingerprint, separately per kind.  The registry
    also owns the latest snapshot time per kind, which drives both the
    seven-day current view and the running bits.
    """

    def __init__(self) -> None:
        self._records: dict[NodeKind, dict[str, NodeRecord]] = {
            "relay": {},
            "bridge": {},
        }
        self._latest: dict[NodeKind, datetime | None] = {
            "relay": None,
            "bridge": None,
        }

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def records(self, kind: NodeKind) -> dict[str, NodeRecord]:
        """Return all known records of *kind*, including expired ones."""
        return self._records[kind]

    def get(self, kind: NodeKind, fingerprint: str) -> NodeRecord | None:
        """Return the record for *fingerprint*, or ``None``."""
        return self._records[kind].get(fingerprint)

    def latest_snapshot_time(self, kind: NodeKind) -> datetime | None:
        """Most recent consensus (relay) or status (bridge) time merged."""
        return self._latest[kind]

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self, observation: StatusEntry, kind: NodeKind, timestamp: datetime
    ) -> NodeRecord:
        """Merge one node's snapshot-reported attributes.

        Args:
            observation: The node's entry in a snapshot.
            kind: ``"relay"`` for consensus entries, ``"bridge"`` for
                bridge-status entries.
            timestamp: Valid-after (consensus) or published (bridge
                status) time of the snapshot.

        Returns:
            The merged record now stored in the registry.
        """
        candidate = NodeRecord(
            kind=kind,
            nickname=observation.nickname,
            fingerprint=observation.fingerprint,
            address=observation.address,
            or_port=observation.or_port,
            dir_port=observation.dir_port,
            last_seen=timestamp,
            first_seen=timestamp,
            or_addresses=set(observation.or_addresses),
            flags=set(observation.flags),
            consensus_weight=(
                observation.consensus_weight if kind == "relay" else -1
            ),
            default_policy=observation.default_policy,
            port_list=observation.port_list,
        )
        candidate.last_addresses = {timestamp: candidate.advertised_addresses()}
        return self.merge(candidate)

    def merge(self, candidate: NodeRecord) -> NodeRecord:
        """Merge a fully populated record into the registry.

        The result does not depend on the order in which records for the
        same fingerprint are merged: descriptive fields always come from
        the record with the latest ``last_seen``, ``first_seen`` is the
        minimum, and address histories are unioned.

        Args:
            candidate: A freshly observed or freshly loaded record.  It is
                not modified.

        Returns:
            The merged record now stored in the registry.
        """
        records = self._records[candidate.kind]
        existing = records.get(candidate.fingerprint)

        if existing is None:
            merged = dataclasses.replace(
                candidate, last_addresses=dict(candidate.last_addresses)
            )
        else:
            merged = _merge_records(existing, candidate)

        records[merged.fingerprint] = merged

        latest = self._latest[merged.kind]
        if latest is None or merged.last_seen > latest:
            self._latest[merged.kind] = merged.last_seen
        return merged

    def ingest_consensus(self, consensus: ConsensusSnapshot) -> int:
        """Merge every entry of a relay consensus.

        Returns:
            Number of entries merged.
        """
        for entry in consensus.entries:
            self.ingest(entry, "relay", consensus.valid_after)
        logger.debug(
            "Merged %d relays from consensus valid after %s",
            len(consensus.entries),
            consensus.valid_after,
        )
        return len(consensus.entries)

    def ingest_bridge_status(self, status: BridgeStatusSnapshot) -> int:
        """Merge every entry of a bridge network status.

        Returns:
            Number of entries merged.
        """
        for entry in status.entries:
            self.ingest(entry, "bridge", status.published)
        logger.debug(
            "Merged %d bridges from status published %s",
            len(status.entries),
            status.published,
        )
        return len(status.entries)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def recompute_running_bits(self, kind: NodeKind) -> None:
        """Set ``running`` on every record of *kind*.

        A relay is running iff it was listed in the latest consensus.  A
        bridge is running iff it was listed in the latest bridge status
        with the ``Running`` flag.  Nothing changes while no snapshot of
        *kind* has been merged.
        """
        latest = self._latest[kind]
        if latest is None:
            return
        for record in self._records[kind].values():
            listed = record.last_seen == latest
            if kind == "bridge":
                record.running = listed and "Running" in record.flags
            else:
                record.running = listed

    def current_view(self, kind: NodeKind) -> dict[str, NodeRecord]:
        """Return records of *kind* seen within seven days of the latest
        snapshot, sorted by fingerprint."""
        latest = self._latest[kind]
        records = self._records[kind]
        if latest is None:
            return dict(sorted(records.items()))
        cutoff = latest - CURRENT_WINDOW
        return {
            fingerprint: record
            for fingerprint, record in sorted(records.items())
            if record.last_seen >= cutoff
        }

    def prune(self, kind: NodeKind, cutoff: datetime) -> int:
        """Physically delete records of *kind* last seen before *cutoff*.

        Returns:
            Number of records removed.
        """
        records = self._records[kind]
        stale = [fp for fp, record in records.items() if record.last_seen < cutoff]
        for fingerprint in stale:
            del records[fingerprint]
        if stale:
            logger.info("Pruned %d %s records last seen before %s",
                        len(stale), kind, cutoff)
        return len(stale)

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def apply_lookups(self, results: Mapping[str, Mapping[str, str | None]]) -> None:
        """Set country code and AS number on relays from address lookups.

        Args:
            results: Mapping from address to a dict with optional keys
                ``country_code`` and ``as_number``.
        """
        for record in self._records["relay"].values():
            result = results.get(record.address)
            if not result:
                continue
            if result.get("country_code"):
                record.country_code = result["country_code"].lower()
            if result.get("as_number"):
                record.as_number = result["as_number"]

    def apply_host_names(
        self, host_names: Mapping[str, str | None], looked_up_at: int
    ) -> None:
        """Store reverse DNS results for relays.

        Args:
            host_names: Mapping from address to host name (``None`` if the
                lookup returned nothing).
            looked_up_at: Epoch millis of the lookup.
        """
        for record in self._records["relay"].values():
            if record.address in host_names:
                record.host_name = host_names[record.address]
                record.last_rdns_lookup = looked_up_at

    def apply_server_descriptors(
        self, descriptors: Iterable[ServerDescriptor]
    ) -> None:
        """Copy the contact line of each relay's latest descriptor."""
        latest: dict[str, ServerDescriptor] = {}
        for descriptor in descriptors:
            seen = latest.get(descriptor.fingerprint)
            if seen is None or seen.published < descriptor.published:
                latest[descriptor.fingerprint] = descriptor
        for fingerprint, descriptor in latest.items():
            record = self._records["relay"].get(fingerprint)
            if record is not None:
                record.contact = descriptor.contact

    def apply_pool_assignments(
        self, assignments: Iterable[PoolAssignment]
    ) -> None:
        """Attach pool labels to bridges, later assignments winning."""
        for assignment in sorted(assignments, key=lambda a: a.published):
            for fingerprint, pool in assignment.entries.items():
                record = self._records["bridge"].get(fingerprint)
                if record is not None:
                    record.pool_assignment = pool

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_summary(self, text: str | None) -> int:
        """Merge every well-formed line of a persisted summary.

        Returns:
            Number of records merged; malformed lines are skipped.
        """
        if not text:
            return 0
        merged = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            record = parse_summary_line(line)
            if record is not None:
                self.merge(record)
                merged += 1
        return merged

    def dump_summary(self, include_old: bool = True) -> str:
        """Encode the registry as summary lines, relays first.

        Args:
            include_old: Include records outside the current view.
        """
        lines = []
        for kind in ("relay", "bridge"):
            if include_old:
                records = dict(sorted(self._records[kind].items()))
            else:
                records = self.current_view(kind)
            lines.extend(format_summary_line(r) for r in records.values())
        return "".join(f"{line}\n" for line in lines)


def _merge_records(existing: NodeRecord, candidate: NodeRecord) -> NodeRecord:
    """Combine two records for the same fingerprint."""
    if candidate.last_seen >= existing.last_seen:
        newer, older = candidate, existing
    else:
        newer, older = existing, candidate

    merged = dataclasses.replace(
        older,
        **{name: getattr(newer, name) for name in _DESCRIPTIVE_FIELDS},
    )
    merged.or_addresses = set(newer.or_addresses)
    merged.exit_addresses = set(newer.exit_addresses)
    merged.flags = set(newer.flags)
    merged.running = existing.running

    # Enrichment results stay valid as long as the address is unchanged.
    same_address = older.address == newer.address
    if newer.host_name is None and same_address:
        merged.host_name = older.host_name
        merged.last_rdns_lookup = older.last_rdns_lookup
    else:
        merged.host_name = newer.host_name
        merged.last_rdns_lookup = newer.last_rdns_lookup
    if same_address:
        if merged.country_code == "??":
            merged.country_code = older.country_code
        if merged.as_number is None:
            merged.as_number = older.as_number
    if not merged.exit_addresses:
        merged.exit_addresses = set(older.exit_addresses)
    if merged.contact is None:
        merged.contact = older.contact
    if merged.pool_assignment is None:
        merged.pool_assignment = older.pool_assignment

    merged.first_seen = min(existing.first_seen, candidate.first_seen)
    history = {**existing.last_addresses, **candidate.last_addresses}
    for when, addresses in existing.last_addresses.items():
        if when in candidate.last_addresses:
            history[when] = addresses | candidate.last_addresses[when]
    # The newest entry always holds the addresses the record advertises.
    history[merged.last_seen] = (
        history.get(merged.last_seen, frozenset()) | merged.advertised_addresses()
    )
    merged.last_addresses = dict(sorted(history.items(), reverse=True))
    return merged

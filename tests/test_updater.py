"""Tests for the update pipeline."""

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from onionlens.config import OnionlensConfig
from onionlens.models import (
    BridgeStatusSnapshot,
    ConsensusSnapshot,
    PoolAssignment,
    ServerDescriptor,
    StatusEntry,
    to_millis,
)
from onionlens.persistence import (
    OUT_SUMMARY,
    OUT_UPDATE,
    STATUS_SUMMARY,
    WEIGHTS,
    WEIGHTS_STATUS,
    DocumentStore,
    init_db,
)
from onionlens.registry import NodeRegistry
from onionlens.sources import DescriptorSource
from onionlens.updater import prune_store, run_update

SNAPSHOT = datetime(2013, 4, 24, 12, 0, tzinfo=UTC)
NOW = SNAPSHOT + timedelta(hours=1)

RELAY_FP = "001C13B3A55A71B977CA65EC85539D79C653A3FC"
OLD_RELAY_FP = "000C5F55BD4814B917CC474BD537F1A3B33CCE2A"
BRIDGE_FP = "1FEDE50ED8DBA1DD9F9165F78C8131E4A44AB756"


class FakeSource(DescriptorSource):
    """In-memory source returning fixed documents."""

    def __init__(
        self,
        consensuses: list[ConsensusSnapshot] | None = None,
        bridge_statuses: list[BridgeStatusSnapshot] | None = None,
        descriptors: list[ServerDescriptor] | None = None,
        pool_assignments: list[PoolAssignment] | None = None,
    ) -> None:
        self._consensuses = consensuses or []
        self._bridge_statuses = bridge_statuses or []
        self._descriptors = descriptors or []
        self._pool_assignments = pool_assignments or []

    @classmethod
    def from_config(cls, config: OnionlensConfig) -> "FakeSource":
        return cls()

    def read_consensuses(self) -> Iterator[ConsensusSnapshot]:
        return iter(self._consensuses)

    def read_bridge_statuses(self) -> Iterator[BridgeStatusSnapshot]:
        return iter(self._bridge_statuses)

    def read_server_descriptors(self) -> Iterator[ServerDescriptor]:
        return iter(self._descriptors)

    def read_pool_assignments(self) -> Iterator[PoolAssignment]:
        return iter(self._pool_assignments)


def _relay(fingerprint: str = RELAY_FP, address: str = "68.38.171.200") -> StatusEntry:
    return StatusEntry(
        nickname="Ferrari458",
        fingerprint=fingerprint,
        address=address,
        or_port=9001,
        dir_port=9030,
        flags={"Fast", "Running", "Valid"},
        consensus_weight=1140,
        descriptor_digest="D1",
    )


def _consensus(*entries: StatusEntry, valid_after: datetime = SNAPSHOT) -> ConsensusSnapshot:
    return ConsensusSnapshot(
        valid_after=valid_after,
        fresh_until=valid_after + timedelta(hours=1),
        entries=list(entries),
    )


def _full_source() -> FakeSource:
    bridge = StatusEntry(
        nickname="gummy",
        fingerprint=BRIDGE_FP,
        address="10.63.169.98",
        or_port=9001,
        flags={"Running", "Valid"},
    )
    return FakeSource(
        consensuses=[_consensus(_relay())],
        bridge_statuses=[BridgeStatusSnapshot(published=SNAPSHOT, entries=[bridge])],
        descriptors=[
            ServerDescriptor(
                digest="D1",
                fingerprint=RELAY_FP,
                published=SNAPSHOT - timedelta(hours=2),
                bandwidth_rate=5000,
                bandwidth_burst=6000,
                bandwidth_observed=4000,
                contact="ferrari operator",
            )
        ],
        pool_assignments=[PoolAssignment(published=SNAPSHOT, entries={BRIDGE_FP: "email"})],
    )


def _summary(store: DocumentStore, doc_type: str = OUT_SUMMARY) -> NodeRegistry:
    registry = NodeRegistry()
    registry.load_summary(store.retrieve(doc_type))
    return registry


@pytest.fixture
def store() -> DocumentStore:
    store = DocumentStore(init_db(":memory:"))
    yield store
    store.close()


@pytest.fixture
def config() -> OnionlensConfig:
    return OnionlensConfig(reverse_dns=False)


class TestRunUpdate:
    """End-to-end update passes against an in-memory store."""

    def test_first_update(self, store: DocumentStore, config: OnionlensConfig) -> None:
        run = run_update(config, store, _full_source(), now=NOW)

        assert run.relay_count == 1
        assert run.bridge_count == 1
        assert run.id is not None
        assert run.meta == {
            "consensuses": 1,
            "bridge_statuses": 1,
            "server_descriptors": 1,
            "pool_assignments": 1,
            "weights_documents": 1,
        }
        assert store.retrieve(OUT_UPDATE) == str(to_millis(NOW))

        summary = _summary(store)
        relay = summary.get("relay", RELAY_FP)
        assert relay is not None
        assert relay.contact == "ferrari operator"
        assert relay.consensus_weight == 1140
        bridge = summary.get("bridge", BRIDGE_FP)
        assert bridge is not None
        assert bridge.pool_assignment == "email"

    def test_weights_written(self, store: DocumentStore, config: OnionlensConfig) -> None:
        run_update(config, store, _full_source(), now=NOW)

        assert store.keys(WEIGHTS_STATUS) == [RELAY_FP]
        assert store.keys(WEIGHTS) == [RELAY_FP]

    def test_update_run_recorded(self, store: DocumentStore, config: OnionlensConfig) -> None:
        run_update(config, store, _full_source(), now=NOW)
        run_update(config, store, FakeSource(), now=NOW)

        (count,) = store.connection.execute("SELECT count(*) FROM update_runs").fetchone()
        assert count == 2

    def test_state_carries_over(self, store: DocumentStore, config: OnionlensConfig) -> None:
        run_update(config, store, _full_source(), now=NOW)

        later = SNAPSHOT + timedelta(hours=1)
        run = run_update(
            config,
            store,
            FakeSource(consensuses=[_consensus(_relay(), valid_after=later)]),
            now=later + timedelta(hours=1),
        )

        assert run.bridge_count == 1
        relay = _summary(store).get("relay", RELAY_FP)
        assert relay is not None
        assert relay.first_seen == SNAPSHOT
        assert relay.last_seen == later
        # The contact line survives without a new descriptor.
        assert relay.contact == "ferrari operator"

    def test_old_relays_only_in_status_summary(
        self, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        source = FakeSource(
            consensuses=[
                _consensus(
                    _relay(OLD_RELAY_FP, "62.216.201.221"),
                    valid_after=SNAPSHOT - timedelta(days=10),
                ),
                _consensus(_relay()),
            ]
        )

        run = run_update(config, store, source, now=NOW)

        assert run.relay_count == 1
        assert _summary(store).get("relay", OLD_RELAY_FP) is None
        assert _summary(store, STATUS_SUMMARY).get("relay", OLD_RELAY_FP) is not None

    def test_empty_source_on_empty_store(
        self, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        run = run_update(config, store, FakeSource(), now=NOW)

        assert run.relay_count == 0
        assert run.bridge_count == 0
        assert store.retrieve(OUT_SUMMARY) == ""


class TestEnrichment:
    """Geo-IP and reverse DNS lookups during updates."""

    @patch("onionlens.updater.lookup_addresses")
    def test_geoip_applied_when_configured(
        self, mock_lookup: MagicMock, store: DocumentStore
    ) -> None:
        mock_lookup.return_value = {
            "68.38.171.200": {"country_code": "us", "as_number": "AS7922"}
        }
        config = OnionlensConfig(reverse_dns=False, maxmind_city_db="/fake/City.mmdb")

        run_update(config, store, _full_source(), now=NOW)

        relay = _summary(store).get("relay", RELAY_FP)
        assert relay.country_code == "us"
        assert relay.as_number == "AS7922"
        (addresses, _config), _ = mock_lookup.call_args
        assert set(addresses) == {"68.38.171.200"}

    @patch("onionlens.updater.lookup_addresses")
    def test_geoip_skipped_without_databases(
        self, mock_lookup: MagicMock, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        run_update(config, store, _full_source(), now=NOW)

        mock_lookup.assert_not_called()

    @patch("onionlens.updater.reverse_lookup_all")
    def test_reverse_dns_refreshed_after_twelve_hours(
        self, mock_rdns: MagicMock, store: DocumentStore
    ) -> None:
        mock_rdns.return_value = {"68.38.171.200": "c-68-38-171-200.example.net"}
        config = OnionlensConfig(reverse_dns=True)

        run_update(config, store, _full_source(), now=NOW)
        relay = _summary(store).get("relay", RELAY_FP)
        assert relay.host_name == "c-68-38-171-200.example.net"
        assert relay.last_rdns_lookup == to_millis(NOW)

        run_update(config, store, FakeSource(), now=NOW + timedelta(hours=1))
        assert mock_rdns.call_count == 1

        run_update(config, store, FakeSource(), now=NOW + timedelta(hours=13))
        assert mock_rdns.call_count == 2

    @patch("onionlens.updater.reverse_lookup_all")
    def test_reverse_dns_disabled(
        self, mock_rdns: MagicMock, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        run_update(config, store, _full_source(), now=NOW)

        mock_rdns.assert_not_called()


class TestPruneStore:
    """Maintenance deletion of long-gone nodes."""

    def _two_generations(self, store: DocumentStore, config: OnionlensConfig) -> None:
        source = FakeSource(
            consensuses=[
                _consensus(
                    _relay(OLD_RELAY_FP, "62.216.201.221"),
                    valid_after=SNAPSHOT - timedelta(days=10),
                ),
                _consensus(_relay()),
            ]
        )
        run_update(config, store, source, now=NOW)

    def test_removes_old_relay_and_its_documents(
        self, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        self._two_generations(store, config)
        documents_before = len(store.keys(WEIGHTS_STATUS)) + len(store.keys(WEIGHTS))

        removed = prune_store(store, 7)

        assert removed["relays"] == 1
        assert removed["bridges"] == 0
        assert store.keys(WEIGHTS_STATUS) == [RELAY_FP]
        assert store.keys(WEIGHTS) == [RELAY_FP]
        assert removed["documents"] == documents_before - 2
        status = _summary(store, STATUS_SUMMARY)
        assert status.get("relay", OLD_RELAY_FP) is None
        assert status.get("relay", RELAY_FP) is not None

    def test_longer_age_keeps_everything(
        self, store: DocumentStore, config: OnionlensConfig
    ) -> None:
        self._two_generations(store, config)

        removed = prune_store(store, 30)

        assert removed == {"relays": 0, "bridges": 0, "documents": 0}
        assert _summary(store, STATUS_SUMMARY).get("relay", OLD_RELAY_FP) is not None

    def test_empty_store(self, store: DocumentStore) -> None:
        assert prune_store(store, 7) == {"relays": 0, "bridges": 0, "documents": 0}

    def test_age_inside_current_view_rejected(self, store: DocumentStore) -> None:
        with pytest.raises(ValueError, match="at least 7"):
            prune_store(store, 3)

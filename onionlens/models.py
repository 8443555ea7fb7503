"""Data models: snapshot documents, server descriptors, and merged node records."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

NodeKind = Literal["relay", "bridge"]

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_datetime(value: str) -> datetime:
    """Parse a ``YYYY-MM-DD HH:MM:SS`` string as a UTC timestamp.

    Raises:
        ValueError: If *value* does not match the format.
    """
    return datetime.strptime(value, DATETIME_FORMAT).replace(tzinfo=UTC)


def format_datetime(value: datetime) -> str:
    """Format a timestamp as ``YYYY-MM-DD HH:MM:SS`` in UTC."""
    return value.astimezone(UTC).strftime(DATETIME_FORMAT)


def to_millis(value: datetime) -> int:
    """Return milliseconds since the epoch for an aware timestamp."""
    return int(value.timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    """Return the UTC timestamp for milliseconds since the epoch."""
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


# ---------------------------------------------------------------------------
# Inbound snapshot documents
# ---------------------------------------------------------------------------


@dataclass
class StatusEntry:
    """One node as listed in a consensus or bridge-status snapshot.

    Attributes:
        nickname: Operator-chosen nickname.
        fingerprint: 40-character upper-case hex identifier.  Bridge
            statuses already carry the hashed fingerprint here.
        address: Primary IPv4 address.
        or_port: OR port on the primary address.
        dir_port: Directory port, or 0 if none.
        or_addresses: Alternate ``address:port`` strings (IPv6 addresses
            are bracketed).
        flags: Flags assigned by the snapshot publisher.
        consensus_weight: Bandwidth weight from the ``w`` line, or -1.
        descriptor_digest: Digest of the referenced server descriptor.
        default_policy: ``accept`` or ``reject`` from the ``p`` line.
        port_list: Port list from the ``p`` line.
    """

    nickname: str
    fingerprint: str
    address: str
    or_port: int
    dir_port: int = 0
    or_addresses: set[str] = field(default_factory=set)
    flags: set[str] = field(default_factory=set)
    consensus_weight: int = -1
    descriptor_digest: str | None = None
    default_policy: str | None = None
    port_list: str | None = None


@dataclass
class ConsensusSnapshot:
    """An authoritative network-status consensus listing relays.

    Attributes:
        valid_after: Start of the consensus validity interval.
        fresh_until: End of the interval in which this is the freshest
            consensus.
        entries: Relay status entries.
        bandwidth_weights: ``Wgg``/``Wgd``/... parameters scaled by 10000,
            or None if the consensus carries none.
    """

    valid_after: datetime
    fresh_until: datetime
    entries: list[StatusEntry] = field(default_factory=list)
    bandwidth_weights: dict[str, int] | None = None


@dataclass
class BridgeStatusSnapshot:
    """A bridge network status published by the bridge authority."""

    published: datetime
    entries: list[StatusEntry] = field(default_factory=list)


@dataclass
class ServerDescriptor:
    """The subset of a relay or bridge server descriptor used here.

    Attributes:
        digest: Upper-case hex descriptor digest, as referenced from
            consensus entries.
        fingerprint: Fingerprint of the node that published it.
        published: Publication time.
        bandwidth_rate: Average bandwidth in bytes per second.
        bandwidth_burst: Burst bandwidth in bytes per second.
        bandwidth_observed: Observed bandwidth in bytes per second.
    """

    digest: str
    fingerprint: str
    published: datetime
    bandwidth_rate: int
    bandwidth_burst: int
    bandwidth_observed: int
    contact: str | None = None

    @property
    def advertised_bandwidth(self) -> int:
        """Smallest of rate, burst and observed bandwidth."""
        return min(
            self.bandwidth_rate, self.bandwidth_burst, self.bandwidth_observed
        )


@dataclass
class PoolAssignment:
    """Bridge pool assignments: hashed fingerprint -> pool label."""

    published: datetime
    entries: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Merged state
# ---------------------------------------------------------------------------


@dataclass
class NodeRecord:
    """Consolidated state of a single relay or bridge.

    Only ``NodeRegistry`` mutates these records; everything else treats
    them as read-only.

    Attributes:
        kind: ``"relay"`` or ``"bridge"``.
        nickname: Nickname from the most recent observation.
        fingerprint: Relay fingerprint, or hashed fingerprint for bridges.
        address: Primary address from the most recent observation.
        or_port: OR port.
        dir_port: Directory port, or 0.
        last_seen: Time of the most recent snapshot listing this node.
        first_seen: Time of the earliest snapshot ever listing it.
        or_addresses: Alternate ``address:port`` strings.
        exit_addresses: Addresses used for exiting (relays only).
        flags: Flag set from the most recent observation.
        consensus_weight: Consensus weight, or -1 if unknown.
        country_code: Lower-case ISO country code, or ``"??"``.
        as_number: Autonomous system such as ``"AS8767"``, or None.
        host_name: Reverse DNS result for ``address``, if any.
        last_rdns_lookup: Epoch millis of the last reverse lookup, or -1.
        default_policy: Exit policy summary default, if known.
        port_list: Exit policy summary port list, if known.
        contact: Contact line from the latest server descriptor.
        pool_assignment: Bridge pool assignment label (bridges only).
        last_addresses: Address-change history mapping the time an
            address set was observed to that set, newest first.
        running: Derived running bit, recomputed every update.
    """

    kind: NodeKind
    nickname: str
    fingerprint: str
    address: str
    or_port: int
    dir_port: int
    last_seen: datetime
    first_seen: datetime
    or_addresses: set[str] = field(default_factory=set)
    exit_addresses: set[str] = field(default_factory=set)
    flags: set[str] = field(default_factory=set)
    consensus_weight: int = -1
    country_code: str = "??"
    as_number: str | None = None
    host_name: str | None = None
    last_rdns_lookup: int = -1
    default_policy: str | None = None
    port_list: str | None = None
    contact: str | None = None
    pool_assignment: str | None = None
    last_addresses: dict[datetime, frozenset[str]] = field(default_factory=dict)
    running: bool = False

    def advertised_addresses(self) -> frozenset[str]:
        """Return the ``address:port`` strings this record advertises."""
        addresses = {f"{self.address}:{self.or_port}"}
        if self.dir_port > 0:
            addresses.add(f"{self.address}:{self.dir_port}")
        addresses.update(self.or_addresses)
        return frozenset(addresses)

    def last_changed_addresses(self) -> datetime:
        """Return when the current address set was first observed.

        Walks the address-change history from newest to oldest and stops
        at the first entry whose set differs from the newest one.
        """
        if not self.last_addresses:
            return self.last_seen
        entries = iter(self.last_addresses.items())
        changed, current = next(entries)
        for when, addresses in entries:
            if addresses != current:
                break
            changed = when
        return changed

"""Summary query engine: parameter parsing, filtering, ordering, paging.

A query arrives as a mapping from parameter name to the list of values
given for it.  Each parameter is parsed once into a ``Filter``; values of
the same parameter are OR-combined and different parameters are
AND-combined.  Any malformed value raises ``QueryError`` before a single
record is evaluated, so an invalid request never yields partial results.
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from onionlens.models import NodeKind, NodeRecord, format_datetime

logger = logging.getLogger(__name__)

MAX_DAYS = 2**31 - 1

_HEX_FINGERPRINT = re.compile(r"^[0-9a-fA-F]{40}$")
_HEX_TOKEN = re.compile(r"^[0-9a-fA-F]{1,40}$")
_NICKNAME_TOKEN = re.compile(r"^[0-9a-zA-Z.]{1,19}$")
_IPV6_TOKEN = re.compile(r"^\[[0-9a-fA-F:.]{1,39}\]?$")
_IPV4_ADDRESS = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")
_IPV4_PREFIX = re.compile(r"^\d{1,3}(?:\.\d{1,3}){2}$")
_COUNTRY = re.compile(r"^[a-zA-Z]{2}$")
_AS_NUMBER = re.compile(r"^(?:[aA][sS])?(\d+)$")
_FLAG = re.compile(r"^[a-zA-Z0-9]{1,20}$")
_DAYS = re.compile(r"^(?:(\d+)|(\d*)-(\d*))$")
_INTEGER = re.compile(r"^-?\d+$")

# Fingerprint prefixes shorter than this never match.
_MIN_PREFIX_LENGTH = 39


class QueryError(Exception):
    """Raised when a query parameter is unknown or malformed."""


def hash_fingerprint(fingerprint: str) -> str | None:
    """Return the upper-case hex SHA-1 of a hex fingerprint's bytes, or
    ``None`` if *fingerprint* is not hex."""
    try:
        raw = bytes.fromhex(fingerprint)
    except ValueError:
        return None
    return hashlib.sha1(raw).hexdigest().upper()


@dataclass(frozen=True)
class QueryRecord:
    """Read-only projection of a ``NodeRecord`` used to evaluate queries.

    For bridges ``fingerprint`` already is the hashed fingerprint, and
    ``hashed_fingerprint`` is the hash of that.  Bridges have no
    searchable addresses.
    """

    kind: NodeKind
    nickname: str
    fingerprint: str
    hashed_fingerprint: str | None
    addresses: tuple[str, ...]
    running: bool
    flags: frozenset[str]
    country_code: str
    as_number: str | None
    consensus_weight: int
    first_seen: datetime
    last_seen: datetime
    contact: str | None

    @classmethod
    def from_node(cls, record: NodeRecord) -> "QueryRecord":
        addresses: tuple[str, ...] = ()
        if record.kind == "relay":
            addresses = _summary_addresses(record)
        return cls(
            kind=record.kind,
            nickname=record.nickname,
            fingerprint=record.fingerprint.upper(),
            hashed_fingerprint=hash_fingerprint(record.fingerprint),
            addresses=addresses,
            running=record.running,
            flags=frozenset(f.lower() for f in record.flags),
            country_code=record.country_code.lower(),
            as_number=record.as_number,
            consensus_weight=record.consensus_weight,
            first_seen=record.first_seen,
            last_seen=record.last_seen,
            contact=record.contact.lower() if record.contact else None,
        )

    def identifiers(self) -> tuple[str, ...]:
        """Upper-case fingerprint and hashed fingerprint."""
        if self.hashed_fingerprint is None:
            return (self.fingerprint,)
        return (self.fingerprint, self.hashed_fingerprint)


def _summary_addresses(record: NodeRecord) -> tuple[str, ...]:
    """Primary address, OR-address hosts, then exit addresses, deduplicated."""
    hosts = [record.address]
    hosts.extend(a.rsplit(":", 1)[0] for a in sorted(record.or_addresses))
    hosts.extend(sorted(record.exit_addresses))
    return tuple(dict.fromkeys(h.lower() for h in hosts))


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class Filter(ABC):
    """A predicate over ``QueryRecord`` objects.

    Filters on country, AS, flag and contact never match bridges, which
    carry no value for those attributes.
    """

    @abstractmethod
    def matches(self, record: QueryRecord, now: datetime) -> bool:
        """Whether *record* passes, with *now* the reference time."""


@dataclass(frozen=True)
class AnyOf(Filter):
    """Passes records matching at least one of several filters."""

    filters: tuple[Filter, ...]

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return any(f.matches(record, now) for f in self.filters)


@dataclass(frozen=True)
class TypeFilter(Filter):
    kind: NodeKind

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return record.kind == self.kind


@dataclass(frozen=True)
class RunningFilter(Filter):
    running: bool

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return record.running == self.running


@dataclass(frozen=True)
class SearchFilter(Filter):
    """Matches one search token against identifiers, nickname and addresses.

    Attributes:
        token: The normalized token: without a leading ``$``, upper-case
            for hex tokens, lower-case for IPv6 tokens.
        identifier_only: The token was ``$``-prefixed and only matches
            fingerprints.
        ipv6: The token is a bracketed (possibly truncated) IPv6 address.
    """

    token: str
    identifier_only: bool = False
    ipv6: bool = False

    @classmethod
    def parse(cls, value: str) -> "SearchFilter":
        if value.startswith("$"):
            token = value[1:]
            if not _HEX_TOKEN.match(token):
                raise QueryError(f"Invalid fingerprint search term {value!r}")
            return cls(token.upper(), identifier_only=True)
        if value.startswith("["):
            if not _IPV6_TOKEN.match(value):
                raise QueryError(f"Invalid IPv6 search term {value!r}")
            return cls(value.lower(), ipv6=True)
        if not (_HEX_TOKEN.match(value) or _NICKNAME_TOKEN.match(value)):
            raise QueryError(f"Invalid search term {value!r}")
        return cls(value)

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        if self.ipv6:
            if self.token.endswith("]"):
                return self.token in record.addresses
            return any(a.startswith(self.token) for a in record.addresses)
        if self._matches_identifier(record):
            return True
        if self.identifier_only:
            return False
        if self.token.lower() in record.nickname.lower():
            return True
        if _IPV4_ADDRESS.match(self.token):
            return self.token in record.addresses
        if _IPV4_PREFIX.match(self.token):
            return any(a.startswith(self.token + ".") for a in record.addresses)
        return False

    def _matches_identifier(self, record: QueryRecord) -> bool:
        if not _HEX_TOKEN.match(self.token) or len(self.token) < _MIN_PREFIX_LENGTH:
            return False
        token = self.token.upper()
        return any(i.startswith(token) for i in record.identifiers())


@dataclass(frozen=True)
class LookupFilter(Filter):
    fingerprint: str

    @classmethod
    def parse(cls, value: str) -> "LookupFilter":
        if not _HEX_FINGERPRINT.match(value):
            raise QueryError(f"Invalid lookup fingerprint {value!r}")
        return cls(value.upper())

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return self.fingerprint in record.identifiers()


@dataclass(frozen=True)
class CountryFilter(Filter):
    country_code: str

    @classmethod
    def parse(cls, value: str) -> "CountryFilter":
        if not _COUNTRY.match(value):
            raise QueryError(f"Invalid country code {value!r}")
        return cls(value.lower())

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return record.kind == "relay" and record.country_code == self.country_code


@dataclass(frozen=True)
class AsFilter(Filter):
    number: int

    @classmethod
    def parse(cls, value: str) -> "AsFilter":
        match = _AS_NUMBER.match(value)
        if match is None:
            raise QueryError(f"Invalid AS number {value!r}")
        return cls(int(match.group(1)))

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        if record.kind != "relay" or record.as_number is None:
            return False
        match = _AS_NUMBER.match(record.as_number)
        return match is not None and int(match.group(1)) == self.number


@dataclass(frozen=True)
class FlagFilter(Filter):
    flag: str

    @classmethod
    def parse(cls, value: str) -> "FlagFilter":
        if not _FLAG.match(value):
            raise QueryError(f"Invalid flag {value!r}")
        return cls(value.lower())

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        return record.kind == "relay" and self.flag in record.flags


@dataclass(frozen=True)
class DaysFilter(Filter):
    """Whole days between a record's first- or last-seen time and *now*.

    Attributes:
        attribute: ``"first_seen"`` or ``"last_seen"``.
        low: Inclusive lower bound.
        high: Inclusive upper bound, or ``None`` for no bound.
    """

    attribute: str
    low: int
    high: int | None

    @classmethod
    def parse(cls, attribute: str, value: str) -> "DaysFilter":
        match = _DAYS.match(value)
        if match is None:
            raise QueryError(f"Invalid day range {value!r}")
        single, low, high = match.groups()
        if single is not None:
            days = _days(single)
            return cls(attribute, days, days)
        if not low and not high:
            raise QueryError(f"Invalid day range {value!r}")
        return cls(
            attribute,
            _days(low) if low else 0,
            _days(high) if high else None,
        )

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        seen: datetime = getattr(record, self.attribute)
        days = (now - seen) // timedelta(days=1)
        if days < self.low:
            return False
        return self.high is None or days <= self.high


def _days(value: str) -> int:
    days = int(value)
    if days > MAX_DAYS:
        raise QueryError(f"Day count {value} out of range")
    return days


@dataclass(frozen=True)
class ContactFilter(Filter):
    """Every whitespace-separated word must occur in the contact line."""

    words: tuple[str, ...]

    @classmethod
    def parse(cls, value: str) -> "ContactFilter":
        return cls(tuple(word.lower() for word in value.split()))

    def matches(self, record: QueryRecord, now: datetime) -> bool:
        if record.kind != "relay" or record.contact is None:
            return False
        return all(word in record.contact for word in self.words)


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SortOrder:
    """Single sort key with direction."""

    key: str
    descending: bool = False

    KEYS = ("consensus_weight", "first_seen")

    @classmethod
    def parse(cls, value: str) -> "SortOrder":
        if "," in value:
            raise QueryError(f"Only one order key is supported, got {value!r}")
        descending = value.startswith("-")
        key = value[1:] if descending else value
        key = key.lower()
        if key not in cls.KEYS:
            raise QueryError(f"Unknown order key {value!r}")
        return cls(key, descending)

    def apply(self, records: Iterable[QueryRecord]) -> list[QueryRecord]:
        """Sort by key; equal keys stay in fingerprint order."""
        ordered = sorted(records, key=lambda r: r.fingerprint)
        ordered.sort(key=lambda r: getattr(r, self.key), reverse=self.descending)
        return ordered


@dataclass
class Query:
    """A parsed summary query.

    Attributes:
        filters: AND-combined filters.
        order: Optional sort order; records are in fingerprint order
            otherwise.
        offset: Records to skip from the concatenated relay-then-bridge
            result.
        limit: Maximum records to return, or None for all.
    """

    filters: list[Filter] = field(default_factory=list)
    order: SortOrder | None = None
    offset: int = 0
    limit: int | None = None

    def evaluate(
        self,
        relays: Iterable[QueryRecord],
        bridges: Iterable[QueryRecord],
        now: datetime,
    ) -> tuple[list[QueryRecord], list[QueryRecord]]:
        """Filter, sort and page relays and bridges.

        Args:
            relays: Relay records.
            bridges: Bridge records.
            now: Reference time for the day-range filters.

        Returns:
            ``(relays, bridges)`` after paging.
        """
        matched_relays = self._select(relays, now)
        matched_bridges = self._select(bridges, now)

        skip = self.offset
        skipped_relays = min(skip, len(matched_relays))
        matched_relays = matched_relays[skipped_relays:]
        matched_bridges = matched_bridges[skip - skipped_relays :]

        if self.limit is not None:
            kept_relays = min(self.limit, len(matched_relays))
            matched_relays = matched_relays[:kept_relays]
            matched_bridges = matched_bridges[: self.limit - kept_relays]
        return matched_relays, matched_bridges

    def _select(self, records: Iterable[QueryRecord], now: datetime) -> list[QueryRecord]:
        selected = [
            r
            for r in sorted(records, key=lambda r: r.fingerprint)
            if all(f.matches(r, now) for f in self.filters)
        ]
        if self.order is not None:
            selected = self.order.apply(selected)
        return selected


def parse_query(params: Mapping[str, Sequence[str]]) -> Query:
    """Parse request parameters into a ``Query``.

    Args:
        params: Parameter name -> values in request order.

    Raises:
        QueryError: If a parameter name is unknown or any value is
            malformed.
    """
    query = Query()
    for name, values in params.items():
        if name not in _PARAMETERS:
            raise QueryError(f"Unknown parameter {name!r}")
        if not values:
            continue
        if name in ("order", "offset", "limit"):
            if len(values) > 1:
                raise QueryError(f"Parameter {name!r} given more than once")
            value = values[0]
            if name == "order":
                query.order = SortOrder.parse(value)
            elif name == "offset":
                query.offset = max(_integer(name, value), 0)
            else:
                query.limit = max(_integer(name, value), 0)
            continue
        parser = _PARAMETERS[name]
        filters = tuple(dict.fromkeys(parser(value) for value in values))
        query.filters.append(filters[0] if len(filters) == 1 else AnyOf(filters))
    logger.debug("Parsed query with %d filter(s)", len(query.filters))
    return query


def _integer(name: str, value: str) -> int:
    if not _INTEGER.match(value):
        raise QueryError(f"Parameter {name!r} must be an integer, got {value!r}")
    return int(value)


def _parse_type(value: str) -> Filter:
    kind = value.lower()
    if kind not in ("relay", "bridge"):
        raise QueryError(f"Unknown node type {value!r}")
    return TypeFilter(kind)


def _parse_running(value: str) -> Filter:
    flag = value.lower()
    if flag not in ("true", "false"):
        raise QueryError(f"Invalid running value {value!r}")
    return RunningFilter(flag == "true")


_PARAMETERS = {
    "type": _parse_type,
    "running": _parse_running,
    "search": SearchFilter.parse,
    "lookup": LookupFilter.parse,
    "country": CountryFilter.parse,
    "as": AsFilter.parse,
    "flag": FlagFilter.parse,
    "first_seen_days": lambda v: DaysFilter.parse("first_seen", v),
    "last_seen_days": lambda v: DaysFilter.parse("last_seen", v),
    "contact": ContactFilter.parse,
    "order": None,
    "offset": None,
    "limit": None,
}


# ---------------------------------------------------------------------------
# Response document
# ---------------------------------------------------------------------------


def summary_document(
    relays: Sequence[QueryRecord],
    bridges: Sequence[QueryRecord],
    relays_published: datetime | None,
    bridges_published: datetime | None,
) -> dict:
    """Build the summary response body."""
    return {
        "relays_published": _published(relays_published),
        "relays": [
            {"n": r.nickname, "f": r.fingerprint, "a": list(r.addresses), "r": r.running}
            for r in relays
        ],
        "bridges_published": _published(bridges_published),
        "bridges": [
            {"n": b.nickname, "h": b.fingerprint, "r": b.running} for b in bridges
        ],
    }


def _published(value: datetime | None) -> str | None:
    return None if value is None else format_datetime(value)

"""Summary line codec: one persisted ``NodeRecord`` per line.

Field layout (0-based)::

    0  kind marker, "r" or "b"
    1  nickname
    2  fingerprint
    3  address;or-address+or-address;exit-address+exit-address
    4  last-seen date       5  last-seen time
    6  OR port              7  dir port
    8  comma-separated flags
    9  consensus weight (-1 = unknown)
    10 country code ("??" = unknown)
    11 reverse DNS host name    12 last lookup, epoch millis (-1 = none)
    13 default policy           14 port list
    15 first-seen date          16 first-seen time
    17 last-address-change date 18 last-address-change time
    19 AS number
    20 contact                  21 pool assignment

``null`` stands for a missing value.  Everything after field 8 is
optional.  Lines written by ``format_summary_line`` are tab-separated so
that contact lines may contain spaces; lines without any tab are split on
single spaces and the contact takes the rest of the line.
"""

import logging

from onionlens.models import (
    NodeKind,
    NodeRecord,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_MIN_FIELDS = 9
_CONTACT_FIELD = 20

_KIND_MARKERS: dict[str, NodeKind] = {"r": "relay", "b": "bridge"}
_MARKERS_BY_KIND: dict[NodeKind, str] = {v: k for k, v in _KIND_MARKERS.items()}


def parse_summary_line(line: str) -> NodeRecord | None:
    """Parse one persisted summary line.

    Malformed lines are logged and skipped, never raised, so that one bad
    line cannot abort loading the rest of the registry.

    Args:
        line: A single line without its trailing newline.

    Returns:
        The decoded record, or ``None`` if the line is malformed.
    """
    if "\t" in line:
        parts = line.split("\t")
    else:
        parts = line.split(" ")
        if len(parts) > _CONTACT_FIELD + 1:
            parts = parts[:_CONTACT_FIELD] + [" ".join(parts[_CONTACT_FIELD:])]

    if len(parts) < _MIN_FIELDS:
        logger.warning(
            "Too few values in summary line %r; skipping", line
        )
        return None

    kind = _KIND_MARKERS.get(parts[0])
    if kind is None:
        logger.warning("Unknown kind marker in summary line %r; skipping", line)
        return None

    try:
        return _parse_fields(kind, parts)
    except ValueError as exc:
        logger.warning("Could not parse summary line %r: %s; skipping", line, exc)
        return None


def format_summary_line(record: NodeRecord) -> str:
    """Encode *record* as a tab-separated summary line."""
    addresses = ";".join(
        (
            record.address,
            "+".join(sorted(record.or_addresses)),
            "+".join(sorted(record.exit_addresses)),
        )
    )
    last_seen = format_datetime(record.last_seen)
    first_seen = format_datetime(record.first_seen)
    last_changed = format_datetime(record.last_changed_addresses())
    fields = [
        _MARKERS_BY_KIND[record.kind],
        record.nickname,
        record.fingerprint,
        addresses,
        *last_seen.split(" "),
        str(record.or_port),
        str(record.dir_port),
        ",".join(sorted(record.flags)),
        str(record.consensus_weight),
        record.country_code or "??",
        _null(record.host_name),
        str(record.last_rdns_lookup),
        _null(record.default_policy),
        _null(record.port_list),
        *first_seen.split(" "),
        *last_changed.split(" "),
        _null(record.as_number),
        _null(_single_line(record.contact)),
        _null(record.pool_assignment),
    ]
    return "\t".join(fields)


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _parse_fields(kind: NodeKind, parts: list[str]) -> NodeRecord:
    """Decode the positional fields of a summary line.

    Raises:
        ValueError: If an address, number, or timestamp field is malformed.
    """
    or_addresses: set[str] = set()
    exit_addresses: set[str] = set()
    if ";" in parts[3]:
        address_parts = parts[3].split(";")
        if len(address_parts) != 3:
            raise ValueError(f"invalid addresses entry {parts[3]!r}")
        address = address_parts[0]
        or_addresses = {a for a in address_parts[1].split("+") if a}
        exit_addresses = {a for a in address_parts[2].split("+") if a}
    else:
        address = parts[3]

    last_seen = parse_datetime(f"{parts[4]} {parts[5]}")
    record = NodeRecord(
        kind=kind,
        nickname=parts[1],
        fingerprint=parts[2],
        address=address,
        or_port=int(parts[6]),
        dir_port=int(parts[7]),
        last_seen=last_seen,
        first_seen=last_seen,
        or_addresses=or_addresses,
        exit_addresses=exit_addresses,
        flags={f for f in parts[8].split(",") if f},
    )

    n = len(parts)
    if n > 9:
        record.consensus_weight = int(parts[9])
    if n > 10:
        record.country_code = parts[10]
    if n > 12:
        record.host_name = _value(parts[11])
        record.last_rdns_lookup = int(parts[12])
    if n > 14:
        record.default_policy = _value(parts[13])
        record.port_list = _value(parts[14])
    if n > 16:
        record.first_seen = parse_datetime(f"{parts[15]} {parts[16]}")
    last_changed = last_seen
    if n > 18 and parts[17] != "null":
        last_changed = parse_datetime(f"{parts[17]} {parts[18]}")
    if n > 19:
        record.as_number = _value(parts[19])
    if n > 20:
        record.contact = _value(parts[20])
    if n > 21:
        record.pool_assignment = _value(parts[21])

    # The set was in effect from the last change through last-seen.
    addresses = record.advertised_addresses()
    record.last_addresses = {last_seen: addresses, last_changed: addresses}
    return record


def _value(token: str) -> str | None:
    """Map the ``null`` placeholder (and empty fields) to ``None``."""
    if token in ("null", ""):
        return None
    return token


def _null(value: str | None) -> str:
    """Map ``None`` to the ``null`` placeholder."""
    return "null" if value is None else value


def _single_line(value: str | None) -> str | None:
    """Strip tabs and line breaks that would corrupt the line format."""
    if value is None:
        return None
    return " ".join(value.split())

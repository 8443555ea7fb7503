"""JSON directory source: pre-parsed snapshot documents on disk.

Layout below the configured ``descriptor_dir``::

    consensuses/*.json         one ConsensusSnapshot per file
    bridge-statuses/*.json     one BridgeStatusSnapshot per file
    server-descriptors/*.json  one ServerDescriptor, or a list of them
    pool-assignments/*.json    one PoolAssignment per file

Timestamps use ``YYYY-MM-DD HH:MM:SS`` (UTC).  Files are read in name
order; a file that cannot be read or decoded is logged and skipped.
"""

import json
import logging
from collections.abc import Iterator
from pathlib import Path

from onionlens.config import OnionlensConfig
from onionlens.models import (
    BridgeStatusSnapshot,
    ConsensusSnapshot,
    PoolAssignment,
    ServerDescriptor,
    StatusEntry,
    parse_datetime,
)
from onionlens.sources import DescriptorSource

logger = logging.getLogger(__name__)

CONSENSUSES = "consensuses"
BRIDGE_STATUSES = "bridge-statuses"
SERVER_DESCRIPTORS = "server-descriptors"
POOL_ASSIGNMENTS = "pool-assignments"


class JsonDirectorySource(DescriptorSource):
    """Reads snapshot documents from a directory tree.

    Args:
        root: Directory containing the per-type subdirectories.  Missing
            subdirectories yield nothing.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @classmethod
    def from_config(cls, config: OnionlensConfig) -> "JsonDirectorySource":
        return cls(config.descriptor_dir)

    def read_consensuses(self) -> Iterator[ConsensusSnapshot]:
        for path, raw in self._documents(CONSENSUSES):
            try:
                yield ConsensusSnapshot(
                    valid_after=parse_datetime(raw["valid_after"]),
                    fresh_until=parse_datetime(raw["fresh_until"]),
                    entries=_status_entries(raw.get("entries", []), path),
                    bandwidth_weights=_bandwidth_weights(raw.get("bandwidth_weights")),
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed consensus %s: %s", path, exc)

    def read_bridge_statuses(self) -> Iterator[BridgeStatusSnapshot]:
        for path, raw in self._documents(BRIDGE_STATUSES):
            try:
                yield BridgeStatusSnapshot(
                    published=parse_datetime(raw["published"]),
                    entries=_status_entries(raw.get("entries", []), path),
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed bridge status %s: %s", path, exc)

    def read_server_descriptors(self) -> Iterator[ServerDescriptor]:
        for path, raw in self._documents(SERVER_DESCRIPTORS):
            items = raw if isinstance(raw, list) else [raw]
            for item in items:
                try:
                    yield _server_descriptor(item)
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed server descriptor in %s: %s", path, exc
                    )

    def read_pool_assignments(self) -> Iterator[PoolAssignment]:
        for path, raw in self._documents(POOL_ASSIGNMENTS):
            try:
                yield PoolAssignment(
                    published=parse_datetime(raw["published"]),
                    entries={
                        str(fp).upper(): str(pool)
                        for fp, pool in raw.get("entries", {}).items()
                    },
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed pool assignment %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _documents(self, kind: str) -> Iterator[tuple[Path, object]]:
        """Yield ``(path, decoded JSON)`` for every readable file of *kind*."""
        directory = self._root / kind
        if not directory.is_dir():
            logger.debug("No %s directory at %s", kind, directory)
            return
        for path in sorted(directory.glob("*.json")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Could not read %s: %s", path, exc)
                continue
            yield path, raw


def _status_entries(raw_entries: list, path: Path) -> list[StatusEntry]:
    """Decode status entries, skipping any that are malformed."""
    entries = []
    for raw in raw_entries:
        try:
            entries.append(_status_entry(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed status entry in %s: %s", path, exc)
    return entries


def _status_entry(raw: dict) -> StatusEntry:
    return StatusEntry(
        nickname=raw["nickname"],
        fingerprint=raw["fingerprint"].upper(),
        address=raw["address"],
        or_port=int(raw["or_port"]),
        dir_port=int(raw.get("dir_port", 0)),
        or_addresses=set(raw.get("or_addresses", [])),
        flags=set(raw.get("flags", [])),
        consensus_weight=int(raw.get("consensus_weight", -1)),
        descriptor_digest=raw.get("descriptor_digest"),
        default_policy=raw.get("default_policy"),
        port_list=raw.get("port_list"),
    )


def _server_descriptor(raw: dict) -> ServerDescriptor:
    return ServerDescriptor(
        digest=raw["digest"].upper(),
        fingerprint=raw["fingerprint"].upper(),
        published=parse_datetime(raw["published"]),
        bandwidth_rate=int(raw["bandwidth_rate"]),
        bandwidth_burst=int(raw["bandwidth_burst"]),
        bandwidth_observed=int(raw["bandwidth_observed"]),
        contact=raw.get("contact"),
    )


def _bandwidth_weights(raw: dict | None) -> dict[str, int] | None:
    if raw is None:
        return None
    return {str(key): int(value) for key, value in raw.items()}

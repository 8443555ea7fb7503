"""Reverse DNS lookups for relay addresses."""

import logging
import socket
from collections.abc import Iterable

logger = logging.getLogger(__name__)


def reverse_lookup(address: str) -> str | None:
    """Resolve *address* to its primary host name.

    Wraps ``socket.gethostbyaddr``.  A failed lookup is not an error: many
    relays have no PTR record.

    Args:
        address: IPv4 or IPv6 address string.

    Returns:
        The lower-cased host name, or ``None`` if the lookup failed or
        returned the address itself.
    """
    try:
        host_name, _aliases, _addresses = socket.gethostbyaddr(address)
    except (socket.herror, socket.gaierror, OSError) as exc:
        logger.debug("Reverse lookup for %s failed: %s", address, exc)
        return None
    if not host_name or host_name == address:
        return None
    return host_name.lower()


def reverse_lookup_all(addresses: Iterable[str]) -> dict[str, str | None]:
    """Reverse-resolve every distinct address.

    Returns:
        Mapping from address to host name (``None`` where no name was
        found).
    """
    results: dict[str, str | None] = {}
    for address in sorted(set(addresses)):
        results[address] = reverse_lookup(address)
    resolved = sum(1 for name in results.values() if name)
    logger.debug("Resolved %d of %d address(es)", resolved, len(results))
    return results

"""Geo-IP lookups: MaxMind readers for relay country codes and AS numbers."""

import logging
from collections.abc import Iterable

import geoip2.database
import geoip2.errors

from onionlens.config import OnionlensConfig

logger = logging.getLogger(__name__)

_LOOKUP_ERRORS = (geoip2.errors.AddressNotFoundError, ValueError)


def _open_reader(path: str | None, label: str) -> geoip2.database.Reader | None:
    """Open one MaxMind database, or return ``None`` if it is unavailable."""
    if not path:
        return None
    try:
        reader = geoip2.database.Reader(path)
    except FileNotFoundError:
        logger.warning("%s database missing at %s; lookups disabled", label, path)
        return None
    logger.debug("Opened %s database %s", label, path)
    return reader


class GeoIPReader:
    """Country and AS lookups backed by GeoLite2 City and ASN databases.

    Either database may be absent; lookups against an absent database
    return ``None`` instead of failing the update.
    """

    def __init__(
        self,
        city_db_path: str | None = None,
        asn_db_path: str | None = None,
    ) -> None:
        self._city = _open_reader(city_db_path, "GeoLite2-City")
        self._asn = _open_reader(asn_db_path, "GeoLite2-ASN")

    def close(self) -> None:
        for reader in (self._city, self._asn):
            if reader is not None:
                reader.close()

    def lookup_country(self, address: str) -> str | None:
        """Return the lower-case ISO country code of *address*, or ``None``."""
        if self._city is None:
            return None
        try:
            code = self._city.city(address).country.iso_code
        except _LOOKUP_ERRORS:
            logger.debug("No country for %s", address)
            return None
        return code.lower() if code else None

    def lookup_as(self, address: str) -> str | None:
        """Return the AS of *address* formatted as ``AS<number>``, or ``None``."""
        if self._asn is None:
            return None
        try:
            number = self._asn.asn(address).autonomous_system_number
        except _LOOKUP_ERRORS:
            logger.debug("No AS for %s", address)
            return None
        return None if number is None else f"AS{number}"


def lookup_addresses(
    addresses: Iterable[str], config: OnionlensConfig
) -> dict[str, dict[str, str | None]]:
    """Resolve country code and AS number once per distinct relay address.

    Returns:
        Mapping from address to ``{"country_code": ..., "as_number": ...}``,
        the shape ``NodeRegistry.apply_lookups`` consumes.
    """
    reader = GeoIPReader(
        city_db_path=config.maxmind_city_db,
        asn_db_path=config.maxmind_asn_db,
    )
    try:
        return {
            address: {
                "country_code": reader.lookup_country(address),
                "as_number": reader.lookup_as(address),
            }
            for address in sorted(set(addresses))
        }
    finally:
        reader.close()

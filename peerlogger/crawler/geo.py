"""
GeoIP lookups backed by MaxMind databases (GeoLite2-City / GeoLite2-ASN).

Both databases are optional. Missing data is never an error: lookups for
unknown or unparsable addresses return an empty GeoData.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Optional

import maxminddb

from peerlogger.common.types import GeoData

logger = logging.getLogger(__name__)


def _english_name(entry: Any) -> Optional[str]:
    if not isinstance(entry, dict):
        return None
    names = entry.get("names")
    if isinstance(names, dict):
        return names.get("en")
    return None


class GeoIP:
    """Read-only address -> location lookup."""

    def __init__(self, city_db_path: str = "", asn_db_path: str = "") -> None:
        self.city_db_path = city_db_path
        self.asn_db_path = asn_db_path
        self._city: Optional[maxminddb.Reader] = None
        self._asn: Optional[maxminddb.Reader] = None
        if city_db_path:
            self._city = maxminddb.open_database(city_db_path)
            logger.info("Loaded GeoIP city database %s", city_db_path)
        if asn_db_path:
            self._asn = maxminddb.open_database(asn_db_path)
            logger.info("Loaded GeoIP ASN database %s", asn_db_path)

    def database_info(self) -> dict[str, bool]:
        return {
            "city_db_loaded": self._city is not None,
            "asn_db_loaded": self._asn is not None,
        }

    def lookup(self, ip: str) -> GeoData:
        geo = GeoData()
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return geo
        if addr.is_private or addr.is_loopback or addr.is_unspecified:
            return geo

        if self._city is not None:
            try:
                record = self._city.get(addr)
            except ValueError as e:
                logger.debug("City lookup failed for %s: %s", ip, e)
                record = None
            if isinstance(record, dict):
                country = record.get("country")
                geo.country_name = _english_name(country)
                if isinstance(country, dict):
                    geo.country_code = country.get("iso_code")
                geo.city_name = _english_name(record.get("city"))

        if self._asn is not None:
            try:
                record = self._asn.get(addr)
            except ValueError as e:
                logger.debug("ASN lookup failed for %s: %s", ip, e)
                record = None
            if isinstance(record, dict) and record.get("autonomous_system_number") is not None:
                geo.as_number = int(record["autonomous_system_number"])

        return geo

    def close(self) -> None:
        """Close both readers. Safe to call more than once."""
        for reader in (self._city, self._asn):
            if reader is not None:
                reader.close()
        self._city = None
        self._asn = None

# backend/threatwatch/services/enrichment/geo_enrichment_service.py
import io
import logging
import os
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from ipaddress import ip_address
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import geoip2.database
import geoip2.errors
import httpx

from threatwatch.core.config import settings
from threatwatch.schemas.threats import ThreatEvent

logger = logging.getLogger(__name__)

CITY_DB = "GeoLite2-City.mmdb"
ASN_DB = "GeoLite2-ASN.mmdb"
DOWNLOAD_URL = "https://download.maxmind.com/app/geoip_download"


@dataclass(frozen=True)
class GeoInfo:
    country_code: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class DatabaseInfo:
    city_exists: bool
    city_date: Optional[datetime]
    asn_exists: bool
    asn_date: Optional[datetime]


def _file_date(path: Path) -> Optional[datetime]:
    if not path.exists():
        return None
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).replace(tzinfo=None)


class GeoEnrichmentService:
    """
    Country/city/ASN lookups for source IPs from local GeoLite2 databases.

    Missing databases just disable enrichment; events are stored without
    geo data and can be re-enriched later.
    """

    def __init__(self, data_path: Optional[str] = None) -> None:
        self.data_path = Path(data_path or settings.GEOIP_DATA_PATH)
        self._city_reader: Optional[geoip2.database.Reader] = None
        self._asn_reader: Optional[geoip2.database.Reader] = None
        self.reload()

    @property
    def is_city_available(self) -> bool:
        return self._city_reader is not None

    @property
    def is_asn_available(self) -> bool:
        return self._asn_reader is not None

    def reload(self) -> None:
        """(Re)open both readers from disk."""
        self.close()
        self._city_reader = self._open(self.data_path / CITY_DB)
        self._asn_reader = self._open(self.data_path / ASN_DB)

    def _open(self, path: Path) -> Optional[geoip2.database.Reader]:
        if not path.exists():
            logger.warning("%s not found at %s; enrichment from it is unavailable", path.name, path)
            return None
        try:
            reader = geoip2.database.Reader(str(path))
        except Exception:
            logger.warning("Failed to load %s", path, exc_info=True)
            return None
        logger.info("Loaded %s from %s", path.name, path)
        return reader

    def close(self) -> None:
        for reader in (self._city_reader, self._asn_reader):
            if reader is not None:
                reader.close()
        self._city_reader = None
        self._asn_reader = None

    # --------------------------------------------------------
    # Lookups
    # --------------------------------------------------------
    def enrich(self, ip_str: str) -> GeoInfo:
        try:
            ip_obj = ip_address(ip_str)
        except ValueError:
            return GeoInfo()

        if (
            ip_obj.is_private
            or ip_obj.is_loopback
            or ip_obj.is_link_local
            or ip_obj.is_reserved
            or ip_obj.is_multicast
        ):
            return GeoInfo()

        values: Dict[str, object] = {}

        if self._city_reader is not None:
            try:
                city = self._city_reader.city(ip_str)
                values.update(
                    country_code=city.country.iso_code,
                    city=city.city.name,
                    latitude=city.location.latitude,
                    longitude=city.location.longitude,
                )
            except geoip2.errors.AddressNotFoundError:
                pass
            except Exception:
                logger.debug("GeoLite2 city lookup failed for %s", ip_str, exc_info=True)

        if self._asn_reader is not None:
            try:
                asn = self._asn_reader.asn(ip_str)
                values.update(
                    asn=asn.autonomous_system_number,
                    asn_org=asn.autonomous_system_organization,
                )
            except geoip2.errors.AddressNotFoundError:
                pass
            except Exception:
                logger.debug("GeoLite2 ASN lookup failed for %s", ip_str, exc_info=True)

        return GeoInfo(**values)

    def enrich_events(self, events: List[ThreatEvent]) -> None:
        """Attach geo/ASN data to each event in place (one lookup per source IP)."""
        if not self.is_city_available and not self.is_asn_available:
            return

        cache: Dict[str, GeoInfo] = {}
        for event in events:
            geo = cache.get(event.source_ip)
            if geo is None:
                geo = self.enrich(event.source_ip)
                cache[event.source_ip] = geo

            event.country_code = geo.country_code
            event.city = geo.city
            event.asn = geo.asn
            event.asn_org = geo.asn_org
            event.latitude = geo.latitude
            event.longitude = geo.longitude

    # --------------------------------------------------------
    # Database maintenance
    # --------------------------------------------------------
    def get_database_info(self) -> DatabaseInfo:
        city_path = self.data_path / CITY_DB
        asn_path = self.data_path / ASN_DB
        return DatabaseInfo(
            city_exists=city_path.exists(),
            city_date=_file_date(city_path),
            asn_exists=asn_path.exists(),
            asn_date=_file_date(asn_path),
        )

    async def download_databases(self, license_key: str) -> Tuple[bool, str]:
        """Fetch fresh GeoLite2 City and ASN databases and reload the readers."""
        os.makedirs(self.data_path, exist_ok=True)
        downloaded = []

        async with httpx.AsyncClient(timeout=300.0, follow_redirects=True) as client:
            for edition, filename in (("GeoLite2-City", CITY_DB), ("GeoLite2-ASN", ASN_DB)):
                params = {"edition_id": edition, "license_key": license_key, "suffix": "tar.gz"}
                try:
                    resp = await client.get(DOWNLOAD_URL, params=params)
                    resp.raise_for_status()
                    self._extract_mmdb(resp.content, filename)
                except (httpx.HTTPError, tarfile.TarError, KeyError) as exc:
                    return False, f"{edition}: {type(exc).__name__}: {exc}"
                downloaded.append(edition)

        self.reload()
        return True, f"downloaded {', '.join(downloaded)}"

    def _extract_mmdb(self, archive: bytes, filename: str) -> None:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            member = next((m for m in tar.getmembers() if m.name.endswith(filename)), None)
            source = tar.extractfile(member) if member is not None else None
            if source is None:
                raise KeyError(filename)
            target = self.data_path / filename
            tmp = target.with_suffix(".tmp")
            tmp.write_bytes(source.read())
            os.replace(tmp, target)

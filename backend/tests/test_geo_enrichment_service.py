import io
import tarfile
from types import SimpleNamespace

import geoip2.errors

from threatwatch.services.enrichment.geo_enrichment_service import (
    ASN_DB,
    CITY_DB,
    GeoEnrichmentService,
    GeoInfo,
)


class FakeCityReader:
    def __init__(self):
        self.lookups = []

    def city(self, ip):
        self.lookups.append(ip)
        if ip == "9.9.9.9":
            raise geoip2.errors.AddressNotFoundError("not found")
        return SimpleNamespace(
            country=SimpleNamespace(iso_code="FR"),
            city=SimpleNamespace(name="Paris"),
            location=SimpleNamespace(latitude=48.85, longitude=2.35),
        )

    def close(self):
        pass


class FakeAsnReader:
    def asn(self, ip):
        return SimpleNamespace(
            autonomous_system_number=64501,
            autonomous_system_organization="Example Transit",
        )

    def close(self):
        pass


def _service(tmp_path) -> GeoEnrichmentService:
    service = GeoEnrichmentService(str(tmp_path))
    service._city_reader = FakeCityReader()
    service._asn_reader = FakeAsnReader()
    return service


def test_missing_databases_disable_enrichment(tmp_path, make_event) -> None:
    service = GeoEnrichmentService(str(tmp_path))
    event = make_event()

    service.enrich_events([event])

    assert not service.is_city_available
    assert not service.is_asn_available
    assert event.country_code is None
    info = service.get_database_info()
    assert info.city_exists is False
    assert info.asn_date is None


def test_public_ip_lookup(tmp_path) -> None:
    geo = _service(tmp_path).enrich("8.8.8.8")

    assert geo == GeoInfo(
        country_code="FR",
        city="Paris",
        asn=64501,
        asn_org="Example Transit",
        latitude=48.85,
        longitude=2.35,
    )


def test_private_and_invalid_addresses_are_skipped(tmp_path) -> None:
    service = _service(tmp_path)

    assert service.enrich("192.168.1.1") == GeoInfo()
    assert service.enrich("127.0.0.1") == GeoInfo()
    assert service.enrich("not-an-ip") == GeoInfo()
    assert service._city_reader.lookups == []


def test_unknown_address_keeps_asn_data(tmp_path) -> None:
    geo = _service(tmp_path).enrich("9.9.9.9")

    assert geo.country_code is None
    assert geo.asn == 64501


def test_enrich_events_looks_up_each_source_once(tmp_path, make_event) -> None:
    service = _service(tmp_path)
    events = [make_event(source_ip="8.8.8.8") for _ in range(3)]

    service.enrich_events(events)

    assert service._city_reader.lookups == ["8.8.8.8"]
    assert all(e.country_code == "FR" and e.asn_org == "Example Transit" for e in events)


def test_extract_mmdb_from_archive(tmp_path) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        payload = b"mmdb-bytes"
        member = tarfile.TarInfo(f"GeoLite2-ASN_20240301/{ASN_DB}")
        member.size = len(payload)
        tar.addfile(member, io.BytesIO(payload))

    service = GeoEnrichmentService(str(tmp_path))
    service._extract_mmdb(buffer.getvalue(), ASN_DB)

    assert (tmp_path / ASN_DB).read_bytes() == b"mmdb-bytes"
    assert not (tmp_path / CITY_DB).exists()
    assert service.get_database_info().asn_exists is True

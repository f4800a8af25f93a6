from __future__ import annotations

from pathlib import Path

import pytest

from ro_monitoring.errors import InventoryError
from ro_monitoring.inventory import CsvInventorySource, StaticInventorySource, parse_inventory_row
from ro_monitoring.models import EndpointClass, Site


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "ro_data.csv"
    p.write_text(text, encoding="utf-8")
    return p


def test_csv_inventory_parses_dual_and_single_homed_sites(tmp_path: Path) -> None:
    p = _write(
        tmp_path,
        "RO1001,10.10.1.1,10.20.1.1,Pune,Maharashtra,West\n"
        "RO1002,10.10.2.1,,Indore,Madhya Pradesh,Central\n",
    )
    sites = CsvInventorySource(p).snapshot()
    assert [s.code for s in sites] == ["RO1001", "RO1002"]

    dual, single = sites
    assert dual.secondary_endpoint == "10.20.1.1"
    assert dual.is_dual_homed is True
    assert [e.endpoint_class for e in dual.endpoints()] == [EndpointClass.PRIMARY, EndpointClass.SECONDARY]

    assert single.secondary_endpoint is None
    assert single.is_dual_homed is False
    assert [e.address for e in single.endpoints()] == ["10.10.2.1"]
    assert (single.city, single.state, single.region) == ("Indore", "Madhya Pradesh", "Central")


def test_csv_inventory_skips_header_comments_blank_and_short_rows(tmp_path: Path) -> None:
    p = _write(
        tmp_path,
        "RO code,Primary IP,Secondary IP,City,State,Region\n"
        "# decommissioned next quarter\n"
        "\n"
        "RO1,10.0.0.1,10.0.0.2,Pune,MH,West\n"
        "RO2,10.0.1.1,,Surat\n"
        ",10.0.2.1,,Nagpur,MH,West\n"
        " RO3 , 10.0.3.1 , ,Goa,GA,West\n",
    )
    sites = CsvInventorySource(p).snapshot()
    assert [s.code for s in sites] == ["RO1", "RO3"]
    assert sites[1].primary_endpoint == "10.0.3.1"
    assert sites[1].secondary_endpoint is None


def test_csv_inventory_duplicate_codes_first_wins(tmp_path: Path) -> None:
    p = _write(
        tmp_path,
        "RO1,10.0.0.1,,A,B,C\n"
        "RO1,10.9.9.9,,X,Y,Z\n",
    )
    sites = CsvInventorySource(p).snapshot()
    assert len(sites) == 1
    assert sites[0].primary_endpoint == "10.0.0.1"


def test_csv_inventory_rereads_file_each_snapshot(tmp_path: Path) -> None:
    p = _write(tmp_path, "RO1,10.0.0.1,,A,B,C\n")
    source = CsvInventorySource(p)
    assert len(source.snapshot()) == 1
    p.write_text("RO1,10.0.0.1,,A,B,C\nRO2,10.0.0.2,,A,B,C\n", encoding="utf-8")
    assert len(source.snapshot()) == 2


def test_missing_inventory_file_fails_snapshot(tmp_path: Path) -> None:
    with pytest.raises(InventoryError):
        CsvInventorySource(tmp_path / "nope.csv").snapshot()


def test_parse_inventory_row_requires_six_fields() -> None:
    with pytest.raises(ValueError):
        parse_inventory_row(["RO1", "10.0.0.1", "", "Pune", "MH"])
    site = parse_inventory_row(["RO1", "10.0.0.1", "", "Pune", "MH", "West", "extra"])
    assert site.region == "West"


def test_site_requires_code_and_primary() -> None:
    with pytest.raises(ValueError):
        Site(code="", primary_endpoint="10.0.0.1")
    with pytest.raises(ValueError):
        Site(code="RO1", primary_endpoint="")
    assert Site(code="RO1", primary_endpoint="10.0.0.1", secondary_endpoint="  ").secondary_endpoint is None


def test_static_inventory_coalesces_duplicates() -> None:
    a = Site(code="RO1", primary_endpoint="10.0.0.1")
    b = Site(code="RO1", primary_endpoint="10.0.0.9")
    c = Site(code="RO2", primary_endpoint="10.0.0.2")
    assert StaticInventorySource([a, b, c]).snapshot() == [a, c]


@pytest.mark.parametrize("header", ["RO code,Primary IP,Secondary IP,City,State,Region\n", ""])
def test_csv_inventory_strips_utf8_bom(tmp_path: Path, header: str) -> None:
    p = tmp_path / "ro_data.csv"
    p.write_bytes(b"\xef\xbb\xbf" + (header + "R1,10.0.0.1,,Pune,MH,West\n").encode("utf-8"))
    sites = CsvInventorySource(p).snapshot()
    assert [s.code for s in sites] == ["R1"]


def test_csv_inventory_header_after_leading_comment_and_blank_line(tmp_path: Path) -> None:
    p = _write(
        tmp_path,
        "# exported from the outlet register\n"
        "\n"
        "RO code,Primary IP,Secondary IP,City,State,Region\n"
        "R1,10.0.0.1,,Pune,MH,West\n",
    )
    assert [s.code for s in CsvInventorySource(p).snapshot()] == ["R1"]


def test_csv_inventory_header_word_later_in_file_is_a_record(tmp_path: Path) -> None:
    p = _write(
        tmp_path,
        "R1,10.0.0.1,,Pune,MH,West\n"
        "code,10.0.0.2,,Goa,GA,West\n",
    )
    assert [s.code for s in CsvInventorySource(p).snapshot()] == ["R1", "code"]

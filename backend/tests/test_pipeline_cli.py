import json

import pytest

from domain.models import PlaceRecord
from scripts import run_pipeline as cli
from services.pipeline import build_chain, run_pipeline
from settings import settings
from storage.file_storage import FileStorage

PLACES = [
    {"id": "p1", "name": "Smith's Cove", "category": "beach",
     "location": {"district": "George Town", "coordinates": {"lat": 19.2766, "lng": -81.3900}},
     "ratings": {"overall": 4.0, "reviewCount": 0}},
    {"id": "p2", "name": "Smiths Cove", "category": "beach",
     "location": {"district": "George Town", "coordinates": {"lat": 19.2766, "lng": -81.38924}}},
    {"id": "p3", "name": "Stingray City", "category": "tour",
     "location": {"coordinates": {"lat": 19.30, "lng": -81.20}}},
    {"id": "p4", "name": "Sea Shack", "category": "restaurant",
     "location": {"district": "West Bay", "coordinates": {"lat": 19.33, "lng": -81.50}}},
    {"id": "p5", "name": "Wall Dive", "category": "dive-site",
     "location": {"coordinates": {"lat": 19.330001, "lng": -81.500001}}},
]


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "INTER_REQUEST_DELAY_SEC", 0.0)
    monkeypatch.setattr(settings, "GEOCODE_OFFLINE", True)


def test_run_pipeline_offline_end_to_end():
    records = [PlaceRecord.from_dict(p) for p in PLACES]
    result = run_pipeline(records, build_chain(offline=True, seed=1), workers=2)

    by_id = {r.id: r for r in result.records}
    assert set(by_id) == {"p1", "p3", "p4", "p5"}
    assert by_id["p1"].merged_from == ["p2"]
    assert by_id["p1"].extra["ratings"]["overall"] == 4.0
    assert by_id["p3"].coordinate_source == "verified"
    assert by_id["p4"].coordinate_source == "district-centroid"
    assert by_id["p5"].coordinates.lng == -81.500001

    report = result.report()
    assert report["stats"]["inputRecords"] == 5
    assert report["stats"]["outputRecords"] == 4
    assert {c["id"] for c in report["corrections"]} == {"p3", "p4"}
    assert report["duplicates"][0]["reason"] == "name_proximity"
    assert report["unresolvedFraction"] == 0.0


def _write(path, payload):
    path.write_text(json.dumps(payload))
    return path


def test_cli_writes_output_and_report(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    out = tmp_path / "out" / "places.fixed.json"
    report = tmp_path / "report.json"
    checkpoint = tmp_path / "progress.json"

    code = cli.main([str(src), "--output", str(out), "--report", str(report),
                     "--checkpoint", str(checkpoint), "--offline", "--seed", "3"])

    assert code == cli.EXIT_OK
    written = json.loads(out.read_text())
    assert len(written) == 4
    p3 = next(p for p in written if p["id"] == "p3")
    assert p3["location"]["coordinates"] == {"lat": 19.3757, "lng": -81.3048}
    assert p3["coordinateSource"] == "verified"
    assert p3["coordinateConfidence"] == 1.0
    assert "corrections" in json.loads(report.read_text())
    assert not checkpoint.exists()


def test_cli_exit_1_when_too_many_unresolved(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    previous = _write(tmp_path / "previous-report.json", {"reprocess": []})

    code = cli.main([str(src), "--output", str(tmp_path / "out.json"),
                     "--reprocess-from", str(previous), "--offline"])

    assert code == cli.EXIT_UNRESOLVED
    assert (tmp_path / "out.json").exists()


def test_cli_threshold_is_configurable(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    previous = _write(tmp_path / "previous-report.json", {"reprocess": []})

    code = cli.main([str(src), "--output", str(tmp_path / "out.json"),
                     "--reprocess-from", str(previous), "--offline", "--max-unresolved", "0.5"])

    assert code == cli.EXIT_OK


def test_cli_exit_2_on_missing_or_bad_input(tmp_path):
    assert cli.main([str(tmp_path / "nope.json"), "--output", str(tmp_path / "o.json")]) == cli.EXIT_IO
    bad = _write(tmp_path / "bad.json", {"not": "a list"})
    assert cli.main([str(bad), "--output", str(tmp_path / "o.json")]) == cli.EXIT_IO


def test_cli_exit_2_on_unwritable_output(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")

    code = cli.main([str(src), "--output", str(blocker / "out.json"), "--offline"])

    assert code == cli.EXIT_IO


def test_cli_enrich_fills_default_rating(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    secondary = _write(tmp_path / "google.json", [
        {"id": "p1", "name": "Smith's Cove", "ratings": {"overall": 4.6, "reviewCount": 120}},
    ])
    out = tmp_path / "out.json"

    code = cli.main([str(src), "--output", str(out), "--enrich", str(secondary), "--offline"])

    assert code == cli.EXIT_OK
    p1 = next(p for p in json.loads(out.read_text()) if p["id"] == "p1")
    assert p1["ratings"] == {"overall": 4.6, "reviewCount": 120}
    assert p1["provenance"]["ratings.overall"] == "enrichment"


def test_cli_keeps_checkpoint_when_output_write_fails(tmp_path):
    src = _write(tmp_path / "places.json", PLACES)
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    checkpoint = tmp_path / "progress.json"

    code = cli.main([str(src), "--output", str(blocker / "out.json"),
                     "--checkpoint", str(checkpoint), "--offline"])

    assert code == cli.EXIT_IO
    assert checkpoint.exists()
    assert set(json.loads(checkpoint.read_text())["processedIds"]) == {p["id"] for p in PLACES}
    assert list(tmp_path.glob("progress.*.json")) == []


def test_rerun_on_own_output_is_a_no_op(tmp_path):
    src = _write(tmp_path / "places.json", [
        {"id": "h1", "name": "Hell", "category": "attraction", "location": {"district": "West Bay"}},
        {"id": "s1", "name": "Seven Mile Beach", "category": "beach", "location": {"district": "West Bay"}},
    ])
    first_out, first_report = tmp_path / "run1.json", tmp_path / "run1.report.json"
    second_out, second_report = tmp_path / "run2.json", tmp_path / "run2.report.json"

    assert cli.main([str(src), "--output", str(first_out), "--report", str(first_report), "--offline"]) == cli.EXIT_OK
    assert cli.main([str(first_out), "--output", str(second_out), "--report", str(second_report),
                     "--offline"]) == cli.EXIT_OK

    first, second = json.loads(first_report.read_text()), json.loads(second_report.read_text())
    assert {c["id"] for c in first["corrections"]} == {"h1", "s1"}
    assert second["corrections"] == []
    assert [(i["recordId"], i["issueKind"]) for i in second["issues"]] == \
        [(i["recordId"], i["issueKind"]) for i in first["issues"]]
    assert second["reprocess"] == first["reprocess"] == []

    rerun = {p["id"]: p for p in json.loads(second_out.read_text())}
    assert rerun["h1"]["location"]["coordinates"] == {"lat": 19.387, "lng": -81.4}
    assert rerun["h1"]["precision"]["decimals"] == 4


def test_read_records_keeps_zero_id_and_skips_nameless(tmp_path):
    src = _write(tmp_path / "places.json", [
        {"id": 0, "name": "Grand Old House"},
        {"id": "", "name": "No Id"},
        {"id": "n1", "name": None},
    ])
    records = FileStorage().read_records(src)
    assert [r.id for r in records] == ["0"]

import json

import argparse
import pytest
from main import main, parse_cap
from expansion.config import RegionOverride

FEED = {
    "region": "Germany",
    "data_as_of": "2024-10-01",
    "settlements": [
        {"id": f"s{i}", "name": f"Town {i}", "lat": 50.0 + i * 0.1, "lng": 8.0,
         "region": "Hesse", "population": 20000 + 1000 * i}
        for i in range(6)
    ],
    "stores": [{"id": "st1", "lat": 50.05, "lng": 8.05, "annual_turnover": 900000}],
    "region_populations": [{"region": "Hesse", "population": 6300000}],
    "anchors": [{"id": "a1", "anchor_type": "mall", "lat": 50.1, "lng": 8.001}],
}


@pytest.fixture
def feed(tmp_path):
    path = tmp_path / "germany.json"
    path.write_text(json.dumps(FEED))
    return str(path)


def test_parse_cap():
    assert parse_cap("Hesse=3:pilot") == RegionOverride("Hesse", 3, "pilot")
    assert parse_cap("Hesse=3") == RegionOverride("Hesse", 3, "")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_cap("Hesse")


def test_generate_list_export(feed, tmp_path, capsys, monkeypatch):
    """Verify a generate run is stored and can be listed and exported."""
    monkeypatch.setenv("EXPANSION_MAX_CANDIDATES", "12")
    db = str(tmp_path / "scenarios.db")
    output = tmp_path / "result.json"

    code = main(["--db", db, "generate", feed, "--seed", "1", "--target", "2",
                 "--name", "cli run", "--output", str(output)])
    assert code in (0, 2)
    result = json.loads(output.read_text())
    assert result["region"] == "Germany"

    assert main(["--db", db, "list"]) == 0
    assert result["scenario_id"] in capsys.readouterr().out

    assert main(["--db", db, "export", result["scenario_id"], "--format", "csv"]) == 0
    assert capsys.readouterr().out.startswith("Parameter,Value")


def test_invalid_configuration_exit_code(feed, tmp_path, monkeypatch):
    monkeypatch.setenv("EXPANSION_WEIGHT_GAP", "0.9")
    assert main(["--db", str(tmp_path / "s.db"), "generate", feed]) == 1


def test_missing_scenario_exit_code(tmp_path):
    assert main(["--db", str(tmp_path / "s.db"), "export", "scenario_missing"]) == 1

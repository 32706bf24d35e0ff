import json
import logging
from datetime import date

import pytest
from loaders.feeds import load_anchor_features, load_region_inputs, load_stores_csv

FEED = {
    "region": "Germany",
    "data_as_of": "2024-10-01",
    "bounds": {"min_latitude": 47.3, "max_latitude": 55.1, "min_longitude": 5.9, "max_longitude": 15.0},
    "settlements": [
        {"id": 1, "name": "Kassel", "lat": 51.31, "lng": 9.49, "region": "Hesse",
         "type": "city", "population": 200000},
        {"id": 2, "name": "Hofgeismar", "lat": 51.49, "lng": 9.38, "region": "Hesse",
         "estimated_population": 15000},
    ],
    "stores": [{"id": "st1", "lat": 51.3, "lng": 9.5, "annual_turnover": 900000}],
    "region_populations": [{"region": "Hesse", "population": 6300000}],
    "anchors": [{"id": "a1", "anchor_type": "mall", "lat": 51.32, "lng": 9.48}],
}


@pytest.fixture
def feed_path(tmp_path):
    path = tmp_path / "germany.json"
    path.write_text(json.dumps(FEED))
    return path


def test_load_region_inputs(feed_path):
    """Verify the JSON feed maps onto RegionInputs."""
    inputs = load_region_inputs(feed_path)

    assert inputs.region == "Germany"
    assert inputs.data_as_of == date(2024, 10, 1)
    assert inputs.bounds.max_longitude == 15.0
    assert [s.id for s in inputs.settlements] == ["1", "2"]
    assert inputs.settlements[0].settlement_type == "city"
    assert inputs.settlements[1].population is None
    assert inputs.settlements[1].effective_population == 15000
    assert inputs.stores[0].annual_turnover == 900000
    assert inputs.region_populations[0].estimated is False


def test_load_minimal_feed(tmp_path):
    path = tmp_path / "min.json"
    path.write_text(json.dumps({"region": "Austria"}))
    inputs = load_region_inputs(path)
    assert inputs.settlements == []
    assert inputs.bounds is None
    assert inputs.data_as_of is None


def test_load_anchor_features(feed_path, tmp_path):
    anchors = load_anchor_features(feed_path)
    assert len(anchors) == 1
    assert anchors[0].anchor_type == "mall"
    assert anchors[0].estimated is False

    empty = tmp_path / "empty.json"
    empty.write_text(json.dumps({"region": "Austria"}))
    assert load_anchor_features(empty) == []


def test_load_stores_csv(tmp_path, caplog):
    """Verify CSV stores load, missing turnover becomes None and bad rows are skipped."""
    path = tmp_path / "stores.csv"
    path.write_text(
        "id,lat,lng,annual_turnover\n"
        "s1,51.3,9.5,900000\n"
        "s2,51.4,9.6,\n"
        "s3,123.0,9.6,100\n"
    )
    with caplog.at_level(logging.WARNING):
        stores = load_stores_csv(path)

    assert [s.id for s in stores] == ["s1", "s2"]
    assert stores[0].annual_turnover == 900000.0
    assert stores[1].annual_turnover is None
    assert "s3" in caplog.text


def test_load_stores_csv_without_turnover(tmp_path):
    path = tmp_path / "stores.csv"
    path.write_text("id,lat,lng\ns1,51.3,9.5\n")
    stores = load_stores_csv(path)
    assert stores[0].annual_turnover is None


def test_load_stores_csv_missing_columns(tmp_path):
    path = tmp_path / "stores.csv"
    path.write_text("id,latitude,longitude\ns1,51.3,9.5\n")
    with pytest.raises(ValueError):
        load_stores_csv(path)

import json

import pytest
from expansion.errors import ScenarioNotFoundError
from expansion.models import WeightVector
from expansion.scenario import ScenarioStore, new_record, scenario_id

VERSIONS = {"osm": "overpass-2024-11-01", "demographic": "census-2023"}


def make_id(region="Germany", seed=42, **kwargs):
    args = dict(
        weights=WeightVector(),
        mix_ratio=0.7,
        population_floor=1000,
        snapshot_date="2024-11-01",
        data_versions=VERSIONS,
    )
    args.update(kwargs)
    return scenario_id(region, seed, **args)


def make_record(key, region="Germany", acceptance_rate=50.0, avg_confidence=0.8, seed=42):
    return new_record(
        key,
        None,
        parameters={"region": region, "seed": seed, "target_count": 10},
        data_versions=VERSIONS,
        results={
            "status": "accepted",
            "suggestion_count": 10,
            "acceptance_rate": acceptance_rate,
            "avg_confidence": avg_confidence,
        },
        profile=[{"id": "settlement_1", "final_score": 0.8}],
    )


@pytest.fixture
def store(tmp_path):
    s = ScenarioStore(str(tmp_path / "scenarios.db"))
    yield s
    s.close()


# ═══════════════════════════════════════════════════════════════════════════
# Identifiers
# ═══════════════════════════════════════════════════════════════════════════
def test_scenario_id_is_deterministic():
    assert make_id() == make_id()
    assert make_id().startswith("scenario_")
    assert len(make_id()) == len("scenario_") + 16


def test_scenario_id_covers_inputs():
    """Verify every reproducibility input changes the id."""
    base = make_id()
    assert make_id(seed=43) != base
    assert make_id(region="Austria") != base
    assert make_id(mix_ratio=0.6) != base
    assert make_id(population_floor=2000) != base
    assert make_id(snapshot_date="2025-01-01") != base
    assert make_id(weights=WeightVector(population=0.2, gap=0.4)) != base
    assert make_id(data_versions={"osm": "v2"}) != base


def test_scenario_id_ignores_dict_order():
    reordered = dict(reversed(list(VERSIONS.items())))
    assert make_id(data_versions=reordered) == make_id()


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════
def test_save_and_load(store):
    record = store.save(make_record(make_id()))
    loaded = store.load(record.id)
    assert loaded == record
    assert loaded.parameters["seed"] == 42
    assert loaded.profile[0]["id"] == "settlement_1"


def test_save_is_idempotent(store):
    """Verify saving the same id twice keeps the first record."""
    key = make_id()
    first = store.save(make_record(key, acceptance_rate=50.0))
    second = store.save(make_record(key, acceptance_rate=10.0))

    assert store.count() == 1
    assert second == first
    assert second.results["acceptance_rate"] == 50.0


def test_load_missing_raises(store):
    with pytest.raises(ScenarioNotFoundError):
        store.load("scenario_missing")
    assert store.get("scenario_missing") is None


def test_list_filters_by_region(store):
    store.save(make_record(make_id(), "Germany"))
    store.save(make_record(make_id(region="Austria"), "Austria"))

    assert len(store.list_scenarios()) == 2
    austria = store.list_scenarios(region="Austria")
    assert [r.parameters["region"] for r in austria] == ["Austria"]


def test_persists_across_instances(tmp_path):
    path = str(tmp_path / "scenarios.db")
    first = ScenarioStore(path)
    record = first.save(make_record(make_id()))
    first.close()

    second = ScenarioStore(path)
    assert second.load(record.id) == record
    second.close()


def test_in_memory_store():
    store = ScenarioStore(":memory:")
    store.save(make_record(make_id()))
    assert store.count() == 1
    store.close()


# ═══════════════════════════════════════════════════════════════════════════
# Compare & export
# ═══════════════════════════════════════════════════════════════════════════
def test_compare_flags_significant_changes(store):
    """Verify large acceptance-rate and confidence moves are called out."""
    a = store.save(make_record(make_id(), acceptance_rate=50.0, avg_confidence=0.8, seed=42))
    b = store.save(make_record(make_id(seed=43), acceptance_rate=40.0, avg_confidence=0.65, seed=43))

    diff = store.compare(a.id, b.id)
    assert diff["parameter_diffs"]["parameters.seed"] == {"first": 42, "second": 43}
    assert diff["result_diffs"]["acceptance_rate"]["delta"] == pytest.approx(-10.0)
    assert len(diff["significant_changes"]) == 2


def test_compare_small_changes_not_significant(store):
    a = store.save(make_record(make_id(), acceptance_rate=50.0, seed=42))
    b = store.save(make_record(make_id(seed=43), acceptance_rate=52.0, seed=43))
    assert store.compare(a.id, b.id)["significant_changes"] == []


def test_export_json(store):
    record = store.save(make_record(make_id()))
    data = json.loads(store.export(record.id, "json"))
    assert data["id"] == record.id
    assert data["results"]["status"] == "accepted"


def test_export_csv(store):
    record = store.save(make_record(make_id()))
    lines = store.export(record.id, "csv").splitlines()
    assert lines[0] == "Parameter,Value"
    assert any(line.startswith("parameters.seed,42") for line in lines)


def test_export_unknown_format(store):
    record = store.save(make_record(make_id()))
    with pytest.raises(ValueError):
        store.export(record.id, "xml")


def test_to_frame(store):
    store.save(make_record(make_id()))
    store.save(make_record(make_id(seed=7), seed=7))
    frame = store.to_frame()
    assert len(frame) == 2
    assert "results.acceptance_rate" in frame.columns

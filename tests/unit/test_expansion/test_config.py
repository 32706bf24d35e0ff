import pytest
from expansion.config import EngineConfig, GenerationParams, RegionOverride
from expansion.errors import ConfigurationError
from expansion.models import WeightVector


def test_defaults_are_valid():
    config = EngineConfig().validate()
    assert config.weights.total() == pytest.approx(1.0)
    assert config.merge_radius_for("mall") == 120.0
    assert config.merge_radius_for("station") == 100.0
    assert config.merge_radius_for("pharmacy") == 60.0
    assert config.max_anchors_per_site == 25


def test_weights_must_sum_to_one():
    """Verify a weight vector that does not sum to 1 is rejected up front."""
    config = EngineConfig(weights=WeightVector(population=0.5))
    with pytest.raises(ConfigurationError) as exc:
        config.validate()
    assert "sum to 1.0" in str(exc.value)


def test_invalid_radius_rejected():
    config = EngineConfig(anchor_merge_radii={"mall": -5.0})
    with pytest.raises(ConfigurationError) as exc:
        config.validate()
    assert any("mall" in p for p in exc.value.problems)


def test_all_problems_reported():
    config = EngineConfig(settlement_mix_ratio=1.5, grid_cell_size_m=0, max_anchors_per_site=0)
    with pytest.raises(ConfigurationError) as exc:
        config.validate()
    assert len(exc.value.problems) == 3


def test_from_env():
    """Verify environment variables override the defaults."""
    config = EngineConfig.from_env({
        "ANCHOR_RADIUS_MALL": "150",
        "MAX_ANCHORS_PER_SITE": "10",
        "DIMINISHING_RETURNS": "false",
        "EXPANSION_MIX_SETTLEMENT": "0.6",
        "EXPANSION_POP_MIN": "2500",
        "EXPANSION_SPARSE_DATA_CAP_FACTOR": "0.4",
        "EXPANSION_OSM_SNAPSHOT_DATE": "2025-01-01",
    })
    assert config.merge_radius_for("mall") == 150.0
    assert config.max_anchors_per_site == 10
    assert config.diminishing_returns is False
    assert config.settlement_mix_ratio == 0.6
    assert config.population_floor == 2500
    assert config.population_sparse_factor == 0.4
    assert config.performance_sparse_factor == 0.4
    assert config.snapshot_date == "2025-01-01"


def test_default_data_versions_are_pinned():
    versions = EngineConfig().data_versions
    assert versions["osm"] == "overpass-2024-11-01"
    assert not any("mock" in v for v in versions.values())


def test_from_env_osm_version():
    """Verify the pinned OSM version can be replaced without touching the others."""
    config = EngineConfig.from_env({"EXPANSION_OSM_VERSION": "overpass-2025-03-01"})
    assert config.data_versions["osm"] == "overpass-2025-03-01"
    assert config.data_versions["demographic"] == EngineConfig().data_versions["demographic"]


def test_from_env_empty_keeps_defaults():
    assert EngineConfig.from_env({}) == EngineConfig()


def test_from_env_unparseable_value():
    with pytest.raises(ConfigurationError) as exc:
        EngineConfig.from_env({"MAX_ANCHORS_PER_SITE": "lots"})
    assert "MAX_ANCHORS_PER_SITE" in str(exc.value)


def test_from_env_weights_must_still_sum():
    with pytest.raises(ConfigurationError):
        EngineConfig.from_env({"EXPANSION_WEIGHT_GAP": "0.5"})


def test_with_params_overrides():
    """Verify per-run overrides produce a new config and leave the base untouched."""
    base = EngineConfig()
    params = GenerationParams(region="Germany", settlement_mix_ratio=0.5,
                              min_distance_m=1500, population_floor=5000)
    config = base.with_params(params)
    assert config.settlement_mix_ratio == 0.5
    assert config.min_distance_m == 1500
    assert config.population_floor == 5000
    assert base.settlement_mix_ratio == 0.7


def test_with_params_biases_keep_weights_normalized():
    params = GenerationParams(region="Germany", population_bias=0.9, proximity_bias=0.1)
    weights = EngineConfig().with_params(params).weights
    assert weights.total() == pytest.approx(1.0)
    assert weights.population > 0.25
    assert weights.gap < 0.35


def test_with_params_bad_weight_override():
    """Verify overrides that break the sum fail before any scoring."""
    params = GenerationParams(region="Germany", weight_overrides={"gap": 0.6})
    with pytest.raises(ConfigurationError):
        EngineConfig().with_params(params)


@pytest.mark.parametrize("bias", [
    {"population_bias": 0.51},
    {"proximity_bias": 0.9},
    {"turnover_bias": 0.1},
])
def test_with_params_bad_weight_override_with_bias(bias):
    """Verify a bias cannot rescale an invalid override into a valid one."""
    params = GenerationParams(region="Germany", weight_overrides={"gap": 0.9}, **bias)
    with pytest.raises(ConfigurationError):
        EngineConfig().with_params(params)


def test_with_params_valid_override_then_bias():
    params = GenerationParams(region="Germany", weight_overrides={"gap": 0.45, "population": 0.15},
                              population_bias=0.9)
    weights = EngineConfig().with_params(params).weights
    assert weights.total() == pytest.approx(1.0)
    assert weights.population > 0.15


def test_with_params_valid_weight_override():
    params = GenerationParams(region="Germany", weight_overrides={"gap": 0.45, "population": 0.15})
    weights = EngineConfig().with_params(params).weights
    assert weights.gap == 0.45
    assert weights.population == 0.15


def test_params_validation():
    with pytest.raises(ConfigurationError):
        GenerationParams(region="Germany", aggression=150).validate()
    with pytest.raises(ConfigurationError):
        GenerationParams(region="Germany", weight_overrides={"magic": 1.0}).validate()
    with pytest.raises(ConfigurationError):
        GenerationParams(region="Germany", manual_caps=[RegionOverride("Bavaria", -1)]).validate()


@pytest.mark.parametrize("aggression,target", [
    (0, 50), (20, 50), (21, 100), (40, 100), (60, 150), (80, 200), (81, 300), (100, 300),
])
def test_target_count_from_aggression(aggression, target):
    assert GenerationParams(region="Germany", aggression=aggression).resolved_target_count() == target


def test_explicit_target_wins():
    assert GenerationParams(region="Germany", aggression=90, target_count=7).resolved_target_count() == 7


def test_seed_derivation_is_deterministic():
    a = GenerationParams(region="Germany").resolved_seed()
    b = GenerationParams(region="Germany").resolved_seed()
    c = GenerationParams(region="Austria").resolved_seed()
    assert a == b
    assert a != c
    assert GenerationParams(region="Germany", seed=42).resolved_seed() == 42


def test_config_round_trip():
    config = EngineConfig(min_distance_m=750.0)
    assert EngineConfig.from_dict(config.to_dict()) == config


def test_params_from_dict():
    params = GenerationParams.from_dict({
        "region": "Germany",
        "seed": 3,
        "manual_caps": [{"region": "Bavaria", "cap": 2, "reason": "pilot"}],
    })
    assert params.manual_caps == [RegionOverride("Bavaria", 2, "pilot")]

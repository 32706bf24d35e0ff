from loaders.static import StaticAnchorSource
from expansion.models import AnchorFeature

M_PER_DEG = 111195.0


def feature(fid, meters_north, anchor_type="retail"):
    return AnchorFeature(fid, anchor_type, 50.0 + meters_north / M_PER_DEG, 8.0)


def test_filters_by_radius():
    """Verify only anchors inside the query radius are returned."""
    source = StaticAnchorSource([feature("near", 500), feature("edge", 1900), feature("far", 5000)])
    fetch = source.fetch(50.0, 8.0, 2000)
    assert [f.id for f in fetch.features] == ["near", "edge"]
    assert fetch.live is True


def test_stale_snapshot_not_live():
    source = StaticAnchorSource([feature("near", 500)], live=False)
    assert source.fetch(50.0, 8.0, 2000).live is False


def test_empty_source():
    fetch = StaticAnchorSource([]).fetch(50.0, 8.0, 2000)
    assert fetch.features == []


def test_malformed_passed_through():
    """Verify malformed anchors reach the aggregator, which drops them."""
    bad = AnchorFeature("bad", "retail", float("nan"), 8.0)
    fetch = StaticAnchorSource([feature("near", 500), bad]).fetch(50.0, 8.0, 2000)
    assert [f.id for f in fetch.features] == ["near", "bad"]

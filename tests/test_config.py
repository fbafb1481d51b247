"""
Configuration helpers and validation.
"""

from unittest.mock import patch

from reunite.core import config


def test_default_regions_split_vector_in_quarters():
    regions = config.get_embedding_regions(16)
    assert regions == {
        "upper_face": (0, 4),
        "periocular": (4, 8),
        "mid_face": (8, 12),
        "lower_face": (12, 16),
    }


def test_uneven_dimension_last_region_takes_remainder():
    regions = config.get_embedding_regions(10)
    assert regions["lower_face"] == (6, 10)


@patch.object(config, "EMBEDDING_REGIONS", '{"eyes": [0, 8], "mouth": [8, 16]}')
def test_explicit_region_layout():
    assert config.get_embedding_regions(16) == {"eyes": (0, 8), "mouth": (8, 16)}


@patch.object(config, "SOURCE_RELIABILITY", '{"tip": 0.8, "osint:feed-a": 0.3}')
def test_source_reliability_overrides():
    reliability = config.get_source_reliability()
    assert reliability["tip"] == 0.8
    assert reliability["osint:feed-a"] == 0.3
    assert reliability["case"] == 1.0


def test_resolver_weights_keys():
    assert set(config.get_resolver_weights()) == {"similarity", "geo_temporal", "source_reliability"}


@patch.object(config, "INDEX_PROVIDER", "annoy")
@patch.object(config, "ALERT_FANOUT_CAP", 0)
def test_validate_config_reports_issues():
    issues = config.validate_config()
    assert "Invalid INDEX_PROVIDER: annoy" in issues
    assert "ALERT_FANOUT_CAP must be >= 1" in issues


@patch.object(config, "TRANSPORT_PROVIDER", "webhook")
@patch.object(config, "TRANSPORT_WEBHOOK_URL", "")
def test_webhook_requires_url():
    assert "TRANSPORT_PROVIDER=webhook requires TRANSPORT_WEBHOOK_URL" in config.validate_config()


@patch.object(config, "MATCH_SIMILARITY_FLOOR", 1.5)
def test_floor_out_of_range():
    assert "MATCH_SIMILARITY_FLOOR must be within [0, 1]" in config.validate_config()


def test_ensure_db_directory(tmp_path):
    target = tmp_path / "nested" / "dir" / "engine.db"
    config.ensure_db_directory(str(target))
    assert target.parent.is_dir()

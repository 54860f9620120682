"""
Unit tests for retention policies.

Policies are pure functions of the version list and the current time.
"""

from datetime import datetime, timedelta

import pytest

from core.errors import ConfigurationError
from core.models.config import EngineSettings
from core.models.versions import SaveVersion
from core.sync.retention import (
    KeepFirstAndLatestPolicy,
    KeepLatestPolicy,
    MaxAgePolicy,
    build_retention_policy,
)

NOW = datetime(2024, 6, 1, 12, 0, 0)


def make_versions(count: int, spacing: timedelta = timedelta(hours=1)):
    """Versions 1..count, the newest created at NOW"""
    return [
        SaveVersion(
            slot_id="0123456789abcdef",
            version_id=i,
            content_hash=f"{i:064x}",
            blob_ref=f"00/{i:064x}.zstd",
            codec="zstd",
            size_original=100,
            size_compressed=50,
            created_at=NOW - spacing * (count - i),
        )
        for i in range(1, count + 1)
    ]


class TestKeepLatestPolicy:
    """Test keep-latest-N"""

    def test_keeps_newest(self):
        assert KeepLatestPolicy(5).select_keep(make_versions(6), NOW) == {2, 3, 4, 5, 6}

    def test_fewer_versions_than_count(self):
        assert KeepLatestPolicy(5).select_keep(make_versions(3), NOW) == {1, 2, 3}

    def test_count_one_keeps_newest_only(self):
        assert KeepLatestPolicy(1).select_keep(make_versions(4), NOW) == {4}

    def test_empty(self):
        assert KeepLatestPolicy(5).select_keep([], NOW) == set()

    def test_uses_ids_not_list_order(self):
        versions = list(reversed(make_versions(4)))
        assert KeepLatestPolicy(2).select_keep(versions, NOW) == {3, 4}

    def test_invalid_count(self):
        with pytest.raises(ConfigurationError):
            KeepLatestPolicy(0)


class TestKeepFirstAndLatestPolicy:
    """Test first-plus-latest retention"""

    def test_keeps_first_and_latest(self):
        assert KeepFirstAndLatestPolicy(3).select_keep(make_versions(6), NOW) == {1, 5, 6}

    def test_count_one(self):
        assert KeepFirstAndLatestPolicy(1).select_keep(make_versions(6), NOW) == {6}

    def test_small_history(self):
        assert KeepFirstAndLatestPolicy(5).select_keep(make_versions(2), NOW) == {1, 2}


class TestMaxAgePolicy:
    """Test age-based retention"""

    def test_drops_old_versions(self):
        policy = MaxAgePolicy(timedelta(hours=2), min_keep=1)
        # Ages: v1=4h, v2=3h, v3=2h, v4=1h, v5=0h
        assert policy.select_keep(make_versions(5), NOW) == {3, 4, 5}

    def test_min_keep_overrides_age(self):
        policy = MaxAgePolicy(timedelta(minutes=1), min_keep=2)
        assert policy.select_keep(make_versions(5), NOW) == {4, 5}

    def test_newest_always_kept(self):
        policy = MaxAgePolicy(timedelta(seconds=1), min_keep=1)
        versions = make_versions(3, spacing=timedelta(days=1))
        assert policy.select_keep(versions, NOW + timedelta(days=30)) == {3}

    def test_invalid_arguments(self):
        with pytest.raises(ConfigurationError):
            MaxAgePolicy(timedelta(0))
        with pytest.raises(ConfigurationError):
            MaxAgePolicy(timedelta(hours=1), min_keep=0)


class TestBuildRetentionPolicy:
    """Test policy selection from settings"""

    def test_default_is_keep_latest(self, tmp_path):
        policy = build_retention_policy(EngineSettings(data_dir=tmp_path))
        assert isinstance(policy, KeepLatestPolicy)
        assert not isinstance(policy, KeepFirstAndLatestPolicy)
        assert policy.count == 5

    def test_keep_first(self, tmp_path):
        settings = EngineSettings(data_dir=tmp_path, retention_policy="keep_first", retention_count=3)
        policy = build_retention_policy(settings)
        assert isinstance(policy, KeepFirstAndLatestPolicy)
        assert policy.count == 3

    def test_max_age(self, tmp_path):
        settings = EngineSettings(
            data_dir=tmp_path, retention_policy="max_age", retention_max_age_hours=24, retention_count=2
        )
        policy = build_retention_policy(settings)
        assert isinstance(policy, MaxAgePolicy)
        assert policy.max_age == timedelta(hours=24)
        assert policy.min_keep == 2

    def test_repr_names_parameters(self):
        assert repr(KeepLatestPolicy(4)) == "KeepLatestPolicy(count=4)"

"""Tests for memory_profile module."""

import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import ConfigurationError
from memory_profile import (
    ALLOCATION_KEYS,
    TIERS,
    compute_profile,
    format_profile,
    meets_minimum,
    read_total_memory_mb,
    tier_for,
)


class TestTierSelection:
    """Tier boundaries: lower bound inclusive, upper exclusive."""

    @pytest.mark.parametrize('total,tier', [
        (4096, 'minimal'),
        (8191, 'minimal'),
        (8192, 'small'),
        (16383, 'small'),
        (16384, 'medium'),
        (24000, 'medium'),
        (32768, 'large'),
        (65535, 'large'),
        (65536, 'xlarge'),
        (1024 * 1024, 'xlarge'),
    ])
    def test_boundaries(self, total, tier):
        assert tier_for(total)[0] == tier

    def test_range_reported(self):
        profile = compute_profile(20000)
        assert (profile.lower_mb, profile.upper_mb) == (16384, 32768)
        assert compute_profile(100000).upper_mb is None

    def test_medium_host_scenario(self):
        """24,000 MB host gets medium tier allocations."""
        profile = compute_profile(24000)
        assert profile.tier == 'medium'
        assert profile['tomcat_xms'] == 4096
        assert profile['tomcat_xmx'] == 6144
        assert profile['solr'] == 2048


class TestMonotonicity:
    """Allocations never decrease as tiers go up."""

    def test_every_key_non_decreasing(self):
        samples = [4000, 12000, 24000, 48000, 128000]
        profiles = [compute_profile(mb) for mb in samples]
        for key in ALLOCATION_KEYS + ('postgres_work_mem', 'postgres_maintenance_work_mem'):
            values = [p[key] for p in profiles]
            assert values == sorted(values), key

    def test_table_has_all_keys(self):
        for _, _, values in TIERS:
            assert len(values) == len(ALLOCATION_KEYS)


class TestDerivedValues:
    """work_mem and maintenance_work_mem derive from effective shared buffers."""

    def test_minimal_tier_clamps_low(self):
        profile = compute_profile(4096)
        # 256 // 16 = 16, 256 // 4 = 64
        assert profile['postgres_work_mem'] == 16
        assert profile['postgres_maintenance_work_mem'] == 64

    def test_xlarge_values(self):
        profile = compute_profile(131072)
        assert profile['postgres_work_mem'] == 256
        assert profile['postgres_maintenance_work_mem'] == 1024

    def test_derived_from_overridden_shared_buffers(self):
        profile = compute_profile(4096, {'postgres_shared_buffers': 16384})
        assert profile['postgres_work_mem'] == 256       # clamped at 256
        assert profile['postgres_maintenance_work_mem'] == 2048  # clamped at 2048

    def test_small_shared_buffers_clamp_floor(self):
        profile = compute_profile(4096, {'postgres_shared_buffers': 32})
        assert profile['postgres_work_mem'] == 4
        assert profile['postgres_maintenance_work_mem'] == 64

    def test_derived_override_wins(self):
        profile = compute_profile(24000, {'postgres_work_mem': 99})
        assert profile['postgres_work_mem'] == 99


class TestOverrides:
    """Explicit overrides are returned verbatim regardless of tier."""

    def test_solr_override_scenario(self):
        profile = compute_profile(24000, {'solr': 1000})
        assert profile['solr'] == 1000
        assert profile['tomcat_xmx'] == 6144

    @pytest.mark.parametrize('total', [2048, 24000, 200000])
    def test_override_verbatim_across_tiers(self, total):
        profile = compute_profile(total, {'tomcat_xmx': 5000})
        assert profile['tomcat_xmx'] == 5000
        assert profile.overrides == {'tomcat_xmx': 5000}

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError, match='Unknown memory override'):
            compute_profile(24000, {'tomcat_heap': 1000})

    @pytest.mark.parametrize('value', [0, -1, '2048', 1.5, True])
    def test_invalid_value_rejected(self, value):
        with pytest.raises(ConfigurationError):
            compute_profile(24000, {'solr': value})


class TestUnknownMemory:
    """Unreadable host memory falls back to minimal with a warning."""

    @pytest.mark.parametrize('total', [None, 0, -5])
    def test_falls_back_to_minimal(self, total, caplog):
        with caplog.at_level(logging.WARNING):
            profile = compute_profile(total)
        assert profile.tier == 'minimal'
        assert profile.total_mb is None
        assert 'minimal' in caplog.text

    def test_low_memory_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            compute_profile(4096)
        assert 'recommended' in caplog.text


class TestReadMemory:
    """Test /proc/meminfo parsing."""

    def test_reads_memtotal(self, tmp_path):
        meminfo = tmp_path / 'meminfo'
        meminfo.write_text("MemTotal:       24576000 kB\nMemFree:        1000 kB\n")
        assert read_total_memory_mb(meminfo) == 24000

    def test_missing_file(self, tmp_path):
        assert read_total_memory_mb(tmp_path / 'nope') is None

    def test_garbage(self, tmp_path):
        meminfo = tmp_path / 'meminfo'
        meminfo.write_text("MemTotal: lots\n")
        assert read_total_memory_mb(meminfo) is None


class TestHelpers:
    """Test meets_minimum and format_profile."""

    def test_meets_minimum(self):
        assert meets_minimum(8192) is True
        assert meets_minimum(8191) is False
        assert meets_minimum(None) is False

    def test_format_profile(self):
        text = format_profile(compute_profile(24000, {'solr': 1000}))
        assert 'medium' in text
        assert '-Xms4096m -Xmx6144m' in text
        assert 'solr=1000' in text

    def test_to_dict(self):
        data = compute_profile(24000).to_dict()
        assert data['tier'] == 'medium'
        assert data['range_mb'] == [16384, 32768]
        assert data['allocations']['solr'] == 2048

"""Memory profile selection.

Maps total host memory to a tier and returns per-service heap/buffer
allocations in MB. Explicit overrides always win, including over derived
PostgreSQL settings.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from errors import ConfigurationError

logger = logging.getLogger(__name__)

MINIMUM_RECOMMENDED_MB = 8192

ALLOCATION_KEYS = (
    'tomcat_xms',
    'tomcat_xmx',
    'solr',
    'transform',
    'activemq',
    'postgres_shared_buffers',
    'postgres_effective_cache',
)

DERIVED_KEYS = (
    'postgres_work_mem',
    'postgres_maintenance_work_mem',
)

# (tier, upper bound exclusive in MB, allocations in ALLOCATION_KEYS order)
TIERS = [
    ('minimal', 8192, (1024, 2048, 512, 512, 256, 256, 512)),
    ('small', 16384, (2048, 3072, 1024, 768, 512, 512, 1024)),
    ('medium', 32768, (4096, 6144, 2048, 1024, 512, 1024, 2048)),
    ('large', 65536, (8192, 12288, 4096, 2048, 1024, 2048, 4096)),
    ('xlarge', None, (16384, 24576, 8192, 4096, 2048, 4096, 8192)),
]


@dataclass
class MemoryProfile:
    """Computed memory allocations for one host.

    Attributes:
        tier: Tier label (minimal .. xlarge)
        lower_mb: Inclusive lower bound of the tier range
        upper_mb: Exclusive upper bound (None for the top tier)
        allocations: Effective MB per key, overrides applied
        overrides: The overrides that were applied
        total_mb: Host memory that selected the tier (None if unknown)
    """
    tier: str
    lower_mb: int
    upper_mb: Optional[int]
    allocations: dict = field(default_factory=dict)
    overrides: dict = field(default_factory=dict)
    total_mb: Optional[int] = None

    def __getitem__(self, key: str) -> int:
        return self.allocations[key]

    def to_dict(self) -> dict:
        return {
            'tier': self.tier,
            'range_mb': [self.lower_mb, self.upper_mb],
            'total_mb': self.total_mb,
            'allocations': dict(self.allocations),
            'overrides': dict(self.overrides),
        }


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def tier_for(total_mb: Optional[int]) -> tuple[str, int, Optional[int], tuple]:
    """Return (tier, lower_mb, upper_mb, allocations) for a host size."""
    lower = 0
    if total_mb is None or total_mb <= 0:
        name, upper, values = TIERS[0]
        return name, lower, upper, values
    for name, upper, values in TIERS:
        if upper is None or total_mb < upper:
            return name, lower, upper, values
        lower = upper
    raise AssertionError("unreachable: top tier has no upper bound")


def validate_overrides(overrides: Optional[dict]) -> dict:
    """Check override keys and values.

    Raises:
        ConfigurationError: Unknown key or non-positive/non-integer value
    """
    valid = {}
    for key, value in (overrides or {}).items():
        if key not in ALLOCATION_KEYS and key not in DERIVED_KEYS:
            raise ConfigurationError(
                f"Unknown memory override '{key}'. "
                f"Valid keys: {', '.join(ALLOCATION_KEYS + DERIVED_KEYS)}"
            )
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"Memory override '{key}' must be a positive integer MB, got {value!r}")
        valid[key] = value
    return valid


def compute_profile(total_mb: Optional[int], overrides: Optional[dict] = None) -> MemoryProfile:
    """Compute the memory profile for a host.

    Unknown or unreadable memory (None, <= 0) selects the minimal tier with a
    warning instead of failing.
    """
    overrides = validate_overrides(overrides)
    if total_mb is None or total_mb <= 0:
        logger.warning("Could not determine host memory, using minimal memory profile")
        total_mb = None
    elif total_mb < MINIMUM_RECOMMENDED_MB:
        logger.warning(f"Host has {total_mb}MB RAM, at least {MINIMUM_RECOMMENDED_MB}MB is recommended")

    tier, lower, upper, values = tier_for(total_mb)
    allocations = dict(zip(ALLOCATION_KEYS, values))
    for key in ALLOCATION_KEYS:
        if key in overrides:
            allocations[key] = overrides[key]

    # Derived from effective shared buffers
    shared = allocations['postgres_shared_buffers']
    allocations['postgres_work_mem'] = overrides.get(
        'postgres_work_mem', _clamp(shared // 16, 4, 256))
    allocations['postgres_maintenance_work_mem'] = overrides.get(
        'postgres_maintenance_work_mem', _clamp(shared // 4, 64, 2048))

    logger.debug(f"Memory profile: tier={tier} total={total_mb}MB overrides={overrides}")
    return MemoryProfile(
        tier=tier,
        lower_mb=lower,
        upper_mb=upper,
        allocations=allocations,
        overrides=overrides,
        total_mb=total_mb,
    )


def read_total_memory_mb(meminfo: Path = Path('/proc/meminfo')) -> Optional[int]:
    """Read MemTotal in MB, or None if unavailable."""
    try:
        with open(meminfo, encoding='utf-8') as f:
            for line in f:
                if line.startswith('MemTotal:'):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError) as e:
        logger.debug(f"Cannot read {meminfo}: {e}")
    return None


def meets_minimum(total_mb: Optional[int], minimum: int = MINIMUM_RECOMMENDED_MB) -> bool:
    """True if the host has at least the recommended memory."""
    return total_mb is not None and total_mb >= minimum


def format_profile(profile: MemoryProfile) -> str:
    """Format a profile for display."""
    total = f"{profile.total_mb}MB" if profile.total_mb else 'unknown'
    a = profile.allocations
    lines = [
        f"Memory profile: {profile.tier} (host total: {total})",
        f"  Tomcat heap:        -Xms{a['tomcat_xms']}m -Xmx{a['tomcat_xmx']}m",
        f"  Solr heap:          {a['solr']}m",
        f"  Transform heap:     {a['transform']}m",
        f"  ActiveMQ heap:      {a['activemq']}m",
        f"  PG shared_buffers:  {a['postgres_shared_buffers']}MB",
        f"  PG effective_cache: {a['postgres_effective_cache']}MB",
        f"  PG work_mem:        {a['postgres_work_mem']}MB",
        f"  PG maint_work_mem:  {a['postgres_maintenance_work_mem']}MB",
    ]
    if profile.overrides:
        lines.append(f"  Overrides: {', '.join(f'{k}={v}' for k, v in sorted(profile.overrides.items()))}")
    return '\n'.join(lines)

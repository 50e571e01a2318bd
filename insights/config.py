"""
Configuration module for cl-channel-insights

Contains the Config dataclass that holds all tunable parameters
for the channel insights plugin, plus:
- ConfigSnapshot: Immutable snapshot captured at the start of a request
- Runtime configuration updates via RPC, persisted as overrides
"""

from dataclasses import dataclass, field
from typing import Dict, Any, FrozenSet, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Keys fixed for the lifetime of the plugin process
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'minimum_monitored': int,
    'outlier_multiplier': float,
    'retention_days': int,
    'cleanup_interval': int,
}

# Inclusive bounds for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'minimum_monitored': (0, 10 * 365 * 86400),
    'outlier_multiplier': (0.01, 100.0),
    'retention_days': (1, 3650),
    'cleanup_interval': (60, 7 * 86400),
}


class ConfigValueError(ValueError):
    """A runtime config value that cannot be applied."""


def parse_config_value(key: str, raw: str) -> Any:
    """
    Convert a raw override string to the field's type and check its bounds.

    Raises:
        ConfigValueError: unknown or immutable key, bad type, or out of range
    """
    if key in IMMUTABLE_CONFIG_KEYS:
        raise ConfigValueError(f"Key '{key}' cannot be changed at runtime")
    if key not in CONFIG_FIELD_TYPES:
        raise ConfigValueError(f"Unknown config key: {key}")

    field_type = CONFIG_FIELD_TYPES[key]
    try:
        value = field_type(raw)
    except (ValueError, TypeError) as e:
        raise ConfigValueError(
            f"Invalid value for {key} (expected {field_type.__name__}): {e}"
        ) from e

    bounds = CONFIG_FIELD_RANGES.get(key)
    if bounds and not (bounds[0] <= value <= bounds[1]):
        raise ConfigValueError(
            f"Value {value} out of range [{bounds[0]}, {bounds[1]}] for {key}"
        )
    return value


@dataclass
class Config:
    """
    Configuration container for the channel insights plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/channel_insights.db'

    # Close recommendation defaults (used when a request omits them)
    minimum_monitored: int = 7 * 86400   # Seconds a peer must be observed
    outlier_multiplier: float = 1.5      # 1.5 = aggressive, 3.0 = conservative

    # Forward history
    retention_days: int = 90       # Archive forwards / prune connection events older than this
    cleanup_interval: int = 86400  # Seconds between maintenance runs

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'ConfigSnapshot':
        """Create an immutable snapshot for the duration of one request."""
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> None:
        """
        Apply persisted overrides on startup.

        Overrides that no longer parse, or name keys this version does
        not know, leave the option value in place.
        """
        for key, raw in database.get_all_config_overrides().items():
            try:
                setattr(self, key, parse_config_value(key, raw))
            except ConfigValueError:
                continue
        self._version = database.get_config_version()

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Validate, persist, read back, then apply a runtime override.

        Returns:
            Dict with status, old_value, new_value, version (or error)
        """
        try:
            typed_value = parse_config_value(key, value)
        except ConfigValueError as e:
            return {"error": str(e)}

        new_version = database.set_config_override(key, value)
        if database.get_config_override(key) != value:
            return {"error": "Database write verification failed"}

        old_value = getattr(self, key)
        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot.

    RPC handlers capture one at the start of a request so a concurrent
    `insights-config set` cannot change parameters halfway through.
    """
    db_path: str
    minimum_monitored: int
    outlier_multiplier: float
    retention_days: int
    cleanup_interval: int
    version: int

    @classmethod
    def from_config(cls, config: Config) -> 'ConfigSnapshot':
        return cls(
            db_path=config.db_path,
            minimum_monitored=config.minimum_monitored,
            outlier_multiplier=config.outlier_multiplier,
            retention_days=config.retention_days,
            cleanup_interval=config.cleanup_interval,
            version=config._version,
        )

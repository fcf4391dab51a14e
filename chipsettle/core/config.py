"""
chipsettle/core/config.py

Versioned, immutable configuration.

Config values are passed explicitly to the components that need them.
Changing a value produces a new object with a bumped version. Caches key on
the config fingerprint (a hash of every value), so two configs that differ
in any value never share a cached result, whatever their versions.

YAML layout (all keys optional):

    settlement:
      tolerance: "0.01"
      optimization_timeout_ms: 2000
    warnings:
      minor_threshold: "0.10"
      frequent_adjustment_count: 4
"""

import dataclasses
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from chipsettle.core.canonical import short_hash
from chipsettle.core.exceptions import ConfigurationError
from chipsettle.core.money import to_decimal


def _coerce(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(fields))
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} keys",
            {"keys": ", ".join(unknown)},
        )
    out = {}
    for key, raw in data.items():
        default = fields[key].default
        try:
            if isinstance(default, Decimal):
                out[key] = to_decimal(raw)
            elif isinstance(default, bool):
                # bool("false") is True; only real booleans are accepted.
                if not isinstance(raw, bool):
                    raise TypeError(f"expected true or false, got {type(raw).__name__}")
                out[key] = raw
            elif isinstance(default, int):
                out[key] = int(raw)
            elif isinstance(default, float):
                out[key] = float(raw)
            else:
                out[key] = raw
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid value for {cls.__name__}.{key}",
                {"value": raw, "reason": exc},
            ) from exc
    return out


class _Versioned:

    def evolve(self, **changes):
        """Return a copy with changes applied and version + 1."""
        changes = _coerce(type(self), changes)
        changes["version"] = self.version + 1
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        return cls(**_coerce(cls, data or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            k: (str(v) if isinstance(v, Decimal) else v)
            for k, v in dataclasses.asdict(self).items()
        }

    @property
    def fingerprint(self) -> str:
        """Hash of every value, version included. Used as a cache key."""
        return short_hash(self.to_dict())


@dataclass(frozen=True)
class SettlementConfig(_Versioned):
    version:                  int     = 1
    tolerance:                Decimal = Decimal("0.01")
    decimal_places:           int     = 2
    rounding_mode:            str     = ROUND_HALF_EVEN
    minimum_payment:          Decimal = Decimal("0.01")
    optimization_timeout_ms:  int     = 2000
    read_timeout_ms:          int     = 5000
    exact_search_max_players: int     = 12
    processing_budget_ms:     int     = 2000
    proof_retention_days:     int     = 7
    export_history_limit:     int     = 20
    compact_line_width:       int     = 40
    compact_max_items:        int     = 5
    cache_size:               int     = 128

    def __post_init__(self) -> None:
        if self.tolerance < 0:
            raise ConfigurationError("tolerance must be >= 0")
        if self.decimal_places != 2:
            raise ConfigurationError(
                "decimal_places other than 2 is not supported",
                {"decimal_places": self.decimal_places},
            )
        if self.exact_search_max_players < 1:
            raise ConfigurationError("exact_search_max_players must be >= 1")
        if self.compact_line_width < 20:
            raise ConfigurationError(
                "compact_line_width must be >= 20",
                {"compact_line_width": self.compact_line_width},
            )


@dataclass(frozen=True)
class WarningConfig(_Versioned):
    version:                     int     = 1
    monitoring_interval_seconds: float   = 30.0
    minor_threshold:             Decimal = Decimal("0.10")
    major_threshold:             Decimal = Decimal("1.00")
    critical_threshold:          Decimal = Decimal("5.00")
    auto_correct_threshold:      Decimal = Decimal("1.00")
    enable_auto_correction:      bool    = True
    require_approval_threshold:  Decimal = Decimal("10.00")
    large_adjustment_threshold:  Decimal = Decimal("100")
    frequent_adjustment_count:   int     = 4
    frequent_window_minutes:     int     = 30
    large_negative_position:     Decimal = Decimal("-1000")
    large_positive_position:     Decimal = Decimal("2000")
    max_warning_history:         int     = 100
    retention_days:              int     = 30

    def __post_init__(self) -> None:
        if not (self.minor_threshold <= self.major_threshold <= self.critical_threshold):
            raise ConfigurationError(
                "Severity thresholds must be ordered minor <= major <= critical",
                {
                    "minor":    self.minor_threshold,
                    "major":    self.major_threshold,
                    "critical": self.critical_threshold,
                },
            )
        if self.monitoring_interval_seconds <= 0:
            raise ConfigurationError("monitoring_interval_seconds must be > 0")


def load_config(path) -> Tuple[SettlementConfig, WarningConfig]:
    """Load both config sections from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError("Config file not found", {"path": path})
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError("Config file is not valid YAML", {"path": path}) from exc
    if not isinstance(data, dict):
        raise ConfigurationError("Config root must be a mapping", {"path": path})
    unknown = sorted(set(data) - {"settlement", "warnings"})
    if unknown:
        raise ConfigurationError("Unknown config sections", {"sections": ", ".join(unknown)})
    return (
        SettlementConfig.from_dict(data.get("settlement")),
        WarningConfig.from_dict(data.get("warnings")),
    )

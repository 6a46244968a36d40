"""
Run configuration.

Configuration files are YAML (or JSON) using the camelCase keys below; every
key is optional. Example::

    toleranceOk: 0.01
    toleranceWarn: 0.03
    settleTimeoutMs: 1500
    kindEquivalenceMap:
      TextView: text
      ReactTextView: text
    screenAliasMap:
      BrowseFragment: browse
      HomeScreen: browse
    targets:
      native:
        device: emulator-5554
        package: com.example.tv
        activity: .MainActivity
        resolution: 1920x1080
      ported:
        device: emulator-5556
        package: com.example.tv.rn
        resolution: 1280x720
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from errors import ConfigError
from geometry import Resolution, parse_resolution
from uitree import DEFAULT_SCREEN_TAG_RESOURCE_ID

SEVERITIES = ("ok", "warn", "fail")

DEFAULT_WEIGHTS = {
    "x": 1.0,
    "y": 1.0,
    "width": 1.0,
    "height": 1.0,
    "text": 1.0,
    "structure": 0.5,
}


@dataclass(frozen=True)
class TargetSettings:
    device: str | None = None
    package: str | None = None
    activity: str | None = None
    resolution: Resolution | None = None


@dataclass(frozen=True)
class ParityConfig:
    tolerance_ok: float = 0.01
    tolerance_warn: float = 0.03
    settle_timeout_ms: int = 1500
    settle_poll_ms: int = 250
    kind_equivalence_map: dict[str, str] = field(default_factory=dict)
    screen_alias_map: dict[str, str] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    unmatched_severity: str = "fail"
    unmatched_container_severity: str = "fail"
    gate_severity: str = "warn"
    screen_tag_resource_id: str = DEFAULT_SCREEN_TAG_RESOURCE_ID
    capture_screenshots: bool = False
    artifacts_dir: str = ".parity_artifacts"
    native: TargetSettings = field(default_factory=TargetSettings)
    ported: TargetSettings = field(default_factory=TargetSettings)

    def __post_init__(self) -> None:
        if self.tolerance_ok < 0 or self.tolerance_warn < 0:
            raise ConfigError("Tolerances must be non-negative")
        if self.tolerance_ok > self.tolerance_warn:
            raise ConfigError(
                f"toleranceOk ({self.tolerance_ok}) must not exceed toleranceWarn ({self.tolerance_warn})"
            )
        if self.settle_timeout_ms < 0 or self.settle_poll_ms <= 0:
            raise ConfigError("settleTimeoutMs must be >= 0 and settlePollMs > 0")
        for name in ("unmatched_severity", "unmatched_container_severity", "gate_severity"):
            if getattr(self, name) not in SEVERITIES:
                raise ConfigError(f"{name} must be one of {SEVERITIES}, got {getattr(self, name)!r}")
        unknown = set(self.weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ConfigError(f"Unknown weight(s): {sorted(unknown)}")
        if any(w < 0 for w in self.weights.values()):
            raise ConfigError("Weights must be non-negative")

    def weight(self, name: str) -> float:
        return self.weights.get(name, DEFAULT_WEIGHTS[name])

    def canonical_screen(self, screen_id: str | None) -> str | None:
        if screen_id is None:
            return None
        return self.screen_alias_map.get(screen_id, screen_id)

    def with_targets(self, native_device: str | None = None, ported_device: str | None = None) -> "ParityConfig":
        """Return a copy with device serials overridden (e.g. from the command line)."""
        native = replace(self.native, device=native_device) if native_device else self.native
        ported = replace(self.ported, device=ported_device) if ported_device else self.ported
        return replace(self, native=native, ported=ported)


_KEYS = {
    "toleranceOk": ("tolerance_ok", float),
    "toleranceWarn": ("tolerance_warn", float),
    "settleTimeoutMs": ("settle_timeout_ms", int),
    "settlePollMs": ("settle_poll_ms", int),
    "unmatchedSeverity": ("unmatched_severity", str),
    "unmatchedContainerSeverity": ("unmatched_container_severity", str),
    "gateSeverity": ("gate_severity", str),
    "screenTagResourceId": ("screen_tag_resource_id", str),
    "captureScreenshots": ("capture_screenshots", bool),
    "artifactsDir": ("artifacts_dir", str),
}


def _string_map(value, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    result: dict[str, str] = {}
    for name, canonical in value.items():
        # A list value declares aliases of the key: {browse: [BrowseFragment, HomeScreen]}
        if isinstance(canonical, list):
            result[str(name)] = str(name)
            for alias in canonical:
                result[str(alias)] = str(name)
        else:
            result[str(name)] = str(canonical)
    return result


def _target_settings(value, key: str) -> TargetSettings:
    if value is None:
        return TargetSettings()
    if not isinstance(value, dict):
        raise ConfigError(f"targets.{key} must be a mapping")
    unknown = set(value) - {"device", "package", "activity", "resolution"}
    if unknown:
        raise ConfigError(f"Unknown key(s) in targets.{key}: {sorted(unknown)}")
    resolution = None
    if value.get("resolution") is not None:
        try:
            resolution = parse_resolution(value["resolution"])
        except ValueError as exc:
            raise ConfigError(f"targets.{key}.resolution: {exc}") from exc
    return TargetSettings(
        device=value.get("device") or None,
        package=value.get("package") or None,
        activity=value.get("activity") or None,
        resolution=resolution,
    )


def config_from_dict(data: dict | None) -> ParityConfig:
    data = dict(data or {})
    kwargs: dict = {}

    for key, (attr, cast) in _KEYS.items():
        if key in data:
            value = data.pop(key)
            if cast is bool:
                if not isinstance(value, bool):
                    raise ConfigError(f"{key} must be true or false, got {value!r}")
                kwargs[attr] = value
                continue
            try:
                kwargs[attr] = cast(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {key}: {value!r}") from exc

    kwargs["kind_equivalence_map"] = _string_map(data.pop("kindEquivalenceMap", None), "kindEquivalenceMap")
    kwargs["screen_alias_map"] = _string_map(data.pop("screenAliasMap", None), "screenAliasMap")

    weights = data.pop("weights", None)
    if weights is not None:
        if not isinstance(weights, dict):
            raise ConfigError("weights must be a mapping")
        merged = dict(DEFAULT_WEIGHTS)
        try:
            merged.update({str(k): float(v) for k, v in weights.items()})
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid weights: {weights!r}") from exc
        kwargs["weights"] = merged

    targets = data.pop("targets", None) or {}
    if not isinstance(targets, dict):
        raise ConfigError("targets must be a mapping")
    kwargs["native"] = _target_settings(targets.get("native"), "native")
    kwargs["ported"] = _target_settings(targets.get("ported"), "ported")

    if data:
        raise ConfigError(f"Unknown configuration key(s): {sorted(data)}")
    return ParityConfig(**kwargs)


def load_config(path: str | Path | None) -> ParityConfig:
    """Load a YAML or JSON configuration file; None yields the defaults."""
    if path is None:
        return ParityConfig()
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file {path} not found")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Error loading config file {path}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"Top-level config must be a mapping: {path}")
    return config_from_dict(data)

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

import yaml

from hypermatch.matcher import DEFAULT_THRESHOLD
from hypermatch.points import DEFAULT_POINT_THRESHOLD
from hypermatch.similarity import DEFAULT_SIGMA


# YAML section -> {yaml key: MatchConfig field}
_LAYOUT: Dict[str, Dict[str, str]] = {
    "matching": {
        "threshold": "threshold",
        "sigma": "sigma",
        "backend": "backend",
        "block_bytes": "block_bytes",
        "fallback_to_sequential": "fallback_to_sequential",
    },
    "weights": {
        "area": "area_weight",
        "angle": "angle_weight",
        "descriptor": "descriptor_weight",
    },
    "points": {
        "threshold": "point_threshold",
        "deduplicate": "deduplicate",
    },
    "features": {
        "method": "method",
        "nfeatures": "nfeatures",
        "max_keypoints": "max_keypoints",
        "normalize": "normalize",
        "grid": "grid",
        "cap_per_cell": "cap_per_cell",
    },
    "logging": {
        "level": "log_level",
        "metrics_file": "metrics_file",
    },
}


@dataclass(slots=True)
class MatchConfig:
    """
    Settings for one matching run.

    Weights are the (area, angle, descriptor) coefficients of the combined
    hyperedge score; they are normalized at match time so only their ratios
    matter.
    """
    area_weight: float = 1.0
    angle_weight: float = 1.0
    descriptor_weight: float = 1.0
    threshold: float = DEFAULT_THRESHOLD
    sigma: float = DEFAULT_SIGMA
    backend: str = "sequential"
    block_bytes: int = 64 * 1024 * 1024
    fallback_to_sequential: bool = False

    point_threshold: float = DEFAULT_POINT_THRESHOLD
    deduplicate: bool = True

    method: str = "sift"
    nfeatures: int = 500
    max_keypoints: Optional[int] = 200
    normalize: bool = True
    grid: Optional[Tuple[int, int]] = None   # (cols, rows) for grid NMS; None disables it
    cap_per_cell: int = 60

    log_level: str = "INFO"
    metrics_file: Optional[str] = "logs/metrics.jsonl"

    def __post_init__(self) -> None:
        if min(self.area_weight, self.angle_weight, self.descriptor_weight) < 0:
            raise ValueError("weights must be >= 0")
        if self.area_weight + self.angle_weight + self.descriptor_weight <= 0:
            raise ValueError("at least one weight must be > 0")
        if not (0.0 < float(self.threshold) <= 1.0):
            raise ValueError("threshold must be in (0, 1]")
        if self.sigma <= 0:
            raise ValueError("sigma must be > 0")
        if self.backend not in ("sequential", "vectorized"):
            raise ValueError(f"Unsupported backend: {self.backend}")
        if self.point_threshold <= 0:
            raise ValueError("point threshold must be > 0")
        if self.max_keypoints is not None and self.max_keypoints < 3:
            raise ValueError("max_keypoints must be >= 3 (or null for no limit)")
        if self.grid is not None:
            if len(self.grid) != 2 or min(int(g) for g in self.grid) < 1:
                raise ValueError("grid must be two positive cell counts (or null)")
            self.grid = (int(self.grid[0]), int(self.grid[1]))
        if self.cap_per_cell < 1:
            raise ValueError("cap_per_cell must be >= 1")

    @property
    def weights(self) -> Tuple[float, float, float]:
        return (self.area_weight, self.angle_weight, self.descriptor_weight)

    def with_overrides(self, **overrides: Any) -> "MatchConfig":
        """Copy with the given fields replaced; None values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def config_from_dict(P: Dict[str, Any]) -> MatchConfig:
    """Build a MatchConfig from the nested YAML layout; unknown keys are errors."""
    kwargs: Dict[str, Any] = {}
    for section, values in (P or {}).items():
        if section not in _LAYOUT:
            raise ValueError(f"Unknown config section: {section}")
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        for key, value in values.items():
            if key not in _LAYOUT[section]:
                raise ValueError(f"Unknown config key: {section}.{key}")
            kwargs[_LAYOUT[section][key]] = value
    return MatchConfig(**kwargs)


def load_config(path: str) -> MatchConfig:
    with open(path, "r") as f:
        return config_from_dict(yaml.safe_load(f) or {})

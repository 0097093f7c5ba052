"""
Parametric die tooling cost estimator.

  expected = base(die_type) × size_factor × cavity_multiplier
  size_factor       = 1 + k × max(0, (area − a0) / a0)
  cavity_multiplier = 1 + cavity_slope × (cavities − 1)

The range shown to the estimator is [expected × low_band, expected × high_band].
Budgetary only; final tooling cost needs an engineering review.
"""
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from extrudeiq.services.errors import InvalidInput

DIE_TYPES = ("solid", "hollow", "coex")


@dataclass(frozen=True)
class DieSettings:
    """Admin-tunable estimator parameters. Passed explicitly into every evaluation."""
    a0: float = 0.2              # reference cross-sectional area (in²)
    k: float = 0.4               # size sensitivity
    cavity_slope: float = 0.35
    low_band: float = 0.90
    high_band: float = 1.12
    base_solid: int = 6000
    base_hollow: int = 9500
    base_coex: int = 14000

    @classmethod
    def from_mapping(cls, row: Optional[Mapping[str, Any]]) -> "DieSettings":
        """Build from a DB row / request dict; missing keys keep their defaults."""
        if not row:
            return cls()
        known = {f: row[f] for f in cls.__dataclass_fields__ if row.get(f) is not None}
        for name, value in known.items():
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise InvalidInput(f"{name} must be a number")
            if not math.isfinite(number):
                raise InvalidInput(f"{name} must be a finite number")
        for name in ("base_solid", "base_hollow", "base_coex"):
            if name in known:
                known[name] = max(0, int(math.floor(float(known[name]))))
        for name in ("a0", "k", "cavity_slope", "low_band", "high_band"):
            if name in known:
                known[name] = float(known[name])
        return cls(**known)

    def validate(self) -> "DieSettings":
        for name, value in asdict(self).items():
            if not math.isfinite(value):
                raise InvalidInput(f"{name} must be a finite number")
        if self.a0 <= 0:
            raise InvalidInput("A0 must be > 0")
        if self.k <= 0:
            raise InvalidInput("K must be > 0")
        if self.cavity_slope < 0:
            raise InvalidInput("Cavity slope must be >= 0")
        if not (0 < self.low_band < 2):
            raise InvalidInput("Low band must be between 0 and 2")
        if not (0 < self.high_band < 3):
            raise InvalidInput("High band must be between 0 and 3")
        if self.high_band <= self.low_band:
            raise InvalidInput("High band must be greater than low band")
        if min(self.base_solid, self.base_hollow, self.base_coex) < 0:
            raise InvalidInput("Base costs must be >= 0")
        return self

    def base_for(self, die_type: str) -> int:
        return {
            "solid": self.base_solid,
            "hollow": self.base_hollow,
            "coex": self.base_coex,
        }[die_type]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def evaluate_die_cost(
    die_type: str,
    area_in2: float,
    cavities: float,
    settings: DieSettings,
) -> Dict[str, Any]:
    """Stateless estimate. Same inputs and settings always give the same result."""
    die_type = (die_type or "").strip().lower()
    if die_type not in DIE_TYPES:
        raise InvalidInput(f"die_type must be one of {', '.join(DIE_TYPES)}")
    if area_in2 is None or not math.isfinite(area_in2) or area_in2 <= 0:
        raise InvalidInput("Cross-sectional area must be > 0")

    cav = max(1, int(math.floor(cavities))) if cavities and math.isfinite(cavities) else 1
    base = settings.base_for(die_type)

    size_factor = 1.0 + settings.k * max(0.0, (area_in2 - settings.a0) / settings.a0)
    cavity_multiplier = 1.0 + settings.cavity_slope * (cav - 1)
    expected = base * size_factor * cavity_multiplier

    return {
        "die_type": die_type,
        "base": base,
        "expected": expected,
        "low": expected * settings.low_band,
        "high": expected * settings.high_band,
        "drivers": {
            "area_in2": area_in2,
            "cavities": cav,
            "size_factor": size_factor,
            "cavity_multiplier": cavity_multiplier,
        },
    }

"""
PricingEngine — per-piece material cost, ceiling price and EAU/MOQ tier table.

Covers:
  - Part weight from cross-sectional area or weight-per-foot
  - Material cost and ceiling sell price (material cost × multiplier)
  - EAU tier ladder generation
  - Volume-discount factor, margin and MOQ per tier

Everything in this module is synchronous and pure. Values are kept at full
float precision internally; only the stored tier table is rounded.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from extrudeiq.services.errors import InvalidInput


# ---------------------------------------------------------------------------
# Pricing defaults
# ---------------------------------------------------------------------------
DEFAULT_MULTIPLIER: float = 2.5               # ceiling = material cost × 2.5
DEFAULT_EAU_BASE: int = 1000                  # pcs/year when the estimator leaves it blank

# Canonical annual-volume ladder priced for every quote
_EAU_LADDER: List[int] = [5000, 10000, 20000, 50000, 100000]
_EAU_MULTIPLES: List[int] = [2, 5, 10]        # extra tiers above base when base > 2000
_EAU_MULTIPLES_THRESHOLD: int = 2000

# Stored precision
_FACTOR_DP: int = 6
_DISCOUNT_DP: int = 2

NOTE_MARGIN_TOO_LOW = "Tier not allowed: margin too low at this price."
NOTE_MOQ_EXCEEDS_EAU = "MOQ exceeds EAU assumption."


@dataclass(frozen=True)
class EauMoqConfig:
    k: float = 0.08              # curve aggressiveness
    f_min: float = 0.85          # deepest discount factor (15 % off)
    gp_min_order: float = 500.0  # gross profit a single order must carry
    setup_charge: float = 250.0
    moq_floor: int = 500

    def validate(self) -> "EauMoqConfig":
        if not (0.0 < self.f_min <= 1.0):
            raise InvalidInput("f_min must be in (0, 1]")
        if self.k < 0:
            raise InvalidInput("k must be >= 0")
        if self.gp_min_order < 0 or self.setup_charge < 0:
            raise InvalidInput("gp_min_order and setup_charge must be >= 0")
        if self.moq_floor < 1:
            raise InvalidInput("moq_floor must be >= 1")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_EAU_MOQ_CONFIG = EauMoqConfig()


def _positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def _clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def calculate_weight(
    finished_length_in: float,
    density_lb_in3: float,
    area_in2: Optional[float] = None,
    weight_lb_per_ft: Optional[float] = None,
) -> float:
    """
    Per-piece weight in lb.

    Exactly one geometry input must be given:
      area mode:  area_in2 × length × density
      wpf mode:   weight_lb_per_ft × length / 12
    """
    has_area = area_in2 is not None
    has_wpf = weight_lb_per_ft is not None
    if has_area and has_wpf:
        raise InvalidInput("Provide only one: area OR weight/ft")
    if not has_area and not has_wpf:
        raise InvalidInput("Provide area (in²) or weight/ft (lb/ft)")
    if not _positive(finished_length_in):
        raise InvalidInput("Finished length must be > 0")

    if has_area:
        if not _positive(area_in2):
            raise InvalidInput("area_in2 must be > 0")
        if not _positive(density_lb_in3):
            raise InvalidInput("Material density must be > 0")
        return area_in2 * finished_length_in * density_lb_in3

    if not _positive(weight_lb_per_ft):
        raise InvalidInput("weight_lb_per_ft must be > 0")
    return weight_lb_per_ft * (finished_length_in / 12.0)


def round_nice(n: float) -> int:
    """Round UP to a 'nice' step: 1k up to 10k, 5k up to 50k, 10k above."""
    if n <= 10_000:
        return int(math.ceil(n / 1000) * 1000)
    if n <= 50_000:
        return int(math.ceil(n / 5000) * 5000)
    return int(math.ceil(n / 10_000) * 10_000)


def generate_eau_tiers(base_eau: float) -> List[int]:
    """
    Ascending, de-duplicated annual volumes to price.

    >>> generate_eau_tiers(1000)
    [1000, 5000, 10000, 20000, 50000, 100000]
    """
    if base_eau is None or not math.isfinite(base_eau) or base_eau <= 0:
        raise InvalidInput("Base EAU must be > 0")
    base = max(1, int(math.floor(base_eau)))

    tiers = {base}
    tiers.update(x for x in _EAU_LADDER if x != base)
    if base > _EAU_MULTIPLES_THRESHOLD:
        tiers.update(round_nice(base * m) for m in _EAU_MULTIPLES)
    return sorted(tiers)


class PricingEngine:
    """
    Ceiling-price and volume-tier calculator for extruded parts.

    All monetary values are USD per piece unless stated otherwise.
    """

    def __init__(
        self,
        multiplier: float = DEFAULT_MULTIPLIER,
        eau_moq_config: Optional[EauMoqConfig] = None,
    ) -> None:
        if not _positive(multiplier):
            raise InvalidInput("multiplier must be > 0")
        self.multiplier: float = float(multiplier)
        self.config: EauMoqConfig = (eau_moq_config or DEFAULT_EAU_MOQ_CONFIG).validate()

    # ------------------------------------------------------------------
    # Base pricing
    # ------------------------------------------------------------------

    def calculate_base_price(self, weight_lb: float, price_per_lb: float) -> Dict[str, float]:
        """Material cost and the ceiling sell price no tier may exceed."""
        if not _positive(price_per_lb):
            raise InvalidInput("price_per_lb must be > 0")
        material_cost = weight_lb * price_per_lb
        return {
            "material_cost_per_piece": material_cost,
            "base_price_per_piece": material_cost * self.multiplier,
        }

    # ------------------------------------------------------------------
    # EAU / MOQ table
    # ------------------------------------------------------------------

    def build_eau_moq_table(
        self,
        eau_base: float,
        tiers: List[int],
        price_base_per_piece: float,
        material_cost_per_piece: float,
    ) -> List[Dict[str, Any]]:
        """
        One row per tier volume, in input order. A tier is never dropped: when
        the discounted price leaves no margin the row is kept at the MOQ floor
        and annotated instead.
        """
        cfg = self.config
        base = max(1, int(math.floor(eau_base)))
        table: List[Dict[str, Any]] = []

        for eau in tiers:
            e = max(1, int(math.floor(eau)))
            factor = _clamp((base / e) ** cfg.k, cfg.f_min, 1.0)
            price = price_base_per_piece * factor
            gp = price - material_cost_per_piece

            notes: Optional[str] = None
            if not math.isfinite(gp) or gp <= 0:
                moq = cfg.moq_floor
                notes = NOTE_MARGIN_TOO_LOW
            else:
                moq = max(cfg.moq_floor, math.ceil((cfg.setup_charge + cfg.gp_min_order) / gp))
                if moq > e:
                    notes = NOTE_MOQ_EXCEEDS_EAU

            table.append({
                "eau": e,
                "factor": round(factor, _FACTOR_DP),
                "discount_pct": round((1.0 - factor) * 100.0, _DISCOUNT_DP),
                "price_per_piece": round(price, _FACTOR_DP),
                "gross_profit_per_piece": round(gp, _FACTOR_DP),
                "moq_pieces": int(moq),
                "notes": notes,
            })
        return table

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def price_part(
        self,
        finished_length_in: float,
        density_lb_in3: float,
        price_per_lb: float,
        eau_base: float,
        area_in2: Optional[float] = None,
        weight_lb_per_ft: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Weight → base pricing → tiers → MOQ table, returned as the outputs_json snapshot."""
        weight = calculate_weight(
            finished_length_in, density_lb_in3,
            area_in2=area_in2, weight_lb_per_ft=weight_lb_per_ft,
        )
        base = self.calculate_base_price(weight, price_per_lb)
        tiers = generate_eau_tiers(eau_base)
        table = self.build_eau_moq_table(
            eau_base, tiers,
            base["base_price_per_piece"], base["material_cost_per_piece"],
        )
        return {
            "weight_lb_per_piece": weight,
            "material_cost_per_piece": base["material_cost_per_piece"],
            # legacy key kept for older readers of outputs_json
            "sell_price_per_piece": base["base_price_per_piece"],
            "base_price_per_piece": base["base_price_per_piece"],
            "eau_base": eau_base,
            "eau_moq_config": self.config.to_dict(),
            "eau_moq_table": table,
        }

"""
MLM ranks, qualification requirements and compensation tables.
Defaults live here; overrides come from the compensation plan JSON via Config.
"""
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal
from functools import total_ordering
from typing import Dict, Any, Optional
import logging

from mlm_system.errors import DataIntegrityError

logger = logging.getLogger(__name__)


@total_ordering
class Rank(Enum):
    """MLM rank enumeration, ordered from lowest to highest."""
    STARTER = "starter"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"

    @property
    def level(self) -> int:
        return RANK_ORDER.index(self)

    @property
    def displayName(self) -> str:
        return self.value.capitalize()

    def __lt__(self, other):
        if not isinstance(other, Rank):
            return NotImplemented
        return self.level < other.level


RANK_ORDER = [Rank.STARTER, Rank.BRONZE, Rank.SILVER, Rank.GOLD, Rank.PLATINUM, Rank.DIAMOND]


def parse_rank(value: Optional[str]) -> Rank:
    """
    Parse a stored rank value.

    Raises:
        DataIntegrityError: If value is not a known rank
    """
    try:
        return Rank((value or "").lower())
    except ValueError:
        raise DataIntegrityError(f"Unknown rank value: {value!r}")


@dataclass(frozen=True)
class RankRequirement:
    """Static qualification thresholds for one rank."""
    directReferrals: int = 0
    personalVolume: Decimal = Decimal("0")
    teamVolume: Decimal = Decimal("0")


@dataclass(frozen=True)
class RefundPolicy:
    """Refund rules for one product type."""
    windowDays: int
    maxRefundFraction: Decimal
    processingFee: Decimal


@dataclass(frozen=True)
class CompensationPlan:
    """
    All rate, qualification, protection and refund tables the engine uses.
    Passed explicitly into services; never read from module globals mid-calculation.
    """
    directRate: Decimal
    overrideRates: Dict[int, Decimal]
    overrideMinRanks: Dict[int, Rank]
    leadershipRates: Dict[Rank, Decimal]
    matchingRates: Dict[Rank, Decimal]
    rankBonuses: Dict[Rank, Decimal]
    rankRequirements: Dict[Rank, RankRequirement]
    protectionLimits: Dict[Rank, int]
    refundPolicies: Dict[str, RefundPolicy] = field(default_factory=dict)
    currencyQuantum: Decimal = Decimal("0.01")

    @property
    def maxOverrideLevel(self) -> int:
        return max(self.overrideRates) if self.overrideRates else 0

    def overrideRate(self, level: int) -> Decimal:
        return self.overrideRates.get(level, Decimal("0"))

    def overrideMinRank(self, level: int) -> Rank:
        return self.overrideMinRanks.get(level, Rank.STARTER)

    def leadershipRate(self, rank: Rank) -> Decimal:
        return self.leadershipRates.get(rank, Decimal("0"))

    def matchingRate(self, rank: Rank) -> Decimal:
        return self.matchingRates.get(rank, Decimal("0"))

    def rankBonus(self, rank: Rank) -> Decimal:
        return self.rankBonuses.get(rank, Decimal("0"))

    def protectionLimit(self, rank: Rank) -> int:
        return self.protectionLimits.get(rank, 0)

    def requirement(self, rank: Rank) -> RankRequirement:
        return self.rankRequirements.get(rank, RankRequirement())


# ═══════════════════════════════════════════════════════════════════════════
# DEFAULT TABLES (raw form, same shape as the compensation plan JSON)
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_PLAN: Dict[str, Any] = {
    "directRate": "0.10",
    "overrideRates": {"1": "0.05", "2": "0.03", "3": "0.02", "4": "0.01", "5": "0.01"},
    "overrideMinRanks": {"1": "starter", "2": "bronze", "3": "silver", "4": "gold", "5": "platinum"},
    "leadershipRates": {
        "starter": "0", "bronze": "0", "silver": "0.01",
        "gold": "0.02", "platinum": "0.03", "diamond": "0.05",
    },
    "matchingRates": {
        "starter": "0", "bronze": "0.10", "silver": "0.20",
        "gold": "0.30", "platinum": "0.40", "diamond": "0.50",
    },
    "rankBonuses": {
        "starter": "0", "bronze": "0", "silver": "50",
        "gold": "150", "platinum": "500", "diamond": "1500",
    },
    "rankRequirements": {
        "starter": {"directReferrals": 0, "personalVolume": "0", "teamVolume": "0"},
        "bronze": {"directReferrals": 1, "personalVolume": "100", "teamVolume": "0"},
        "silver": {"directReferrals": 3, "personalVolume": "500", "teamVolume": "1500"},
        "gold": {"directReferrals": 6, "personalVolume": "2000", "teamVolume": "5000"},
        "platinum": {"directReferrals": 11, "personalVolume": "5000", "teamVolume": "25000"},
        "diamond": {"directReferrals": 21, "personalVolume": "15000", "teamVolume": "100000"},
    },
    "protectionLimits": {
        "starter": 0, "bronze": 0, "silver": 1, "gold": 2, "platinum": 3, "diamond": 4,
    },
    "refundPolicies": {
        "membership_fee": {"windowDays": 30, "maxRefundFraction": "1.0", "processingFee": "0"},
        "training_materials": {"windowDays": 14, "maxRefundFraction": "0.8", "processingFee": "25"},
        "marketing_tools": {"windowDays": 7, "maxRefundFraction": "0.5", "processingFee": "15"},
    },
    "currencyQuantum": "0.01",
}


def _rank_table(raw: Dict[str, Any], convert) -> Dict[Rank, Any]:
    table = {}
    for rank_key, value in raw.items():
        try:
            table[Rank(rank_key)] = convert(value)
        except ValueError as e:
            logger.error(f"Invalid compensation plan entry for rank '{rank_key}': {e}")
            raise
    return table


def build_compensation_plan(raw: Dict[str, Any]) -> CompensationPlan:
    """
    Convert a raw plan dict (strings / numbers) into a typed CompensationPlan.
    Keys missing from raw fall back to DEFAULT_PLAN.

    Raises:
        ValueError: If a table contains an unknown rank or malformed number
    """
    merged = dict(DEFAULT_PLAN)
    merged.update(raw or {})

    def dec(value) -> Decimal:
        return Decimal(str(value))

    overrideRates = {int(level): dec(rate) for level, rate in merged["overrideRates"].items()}
    if overrideRates and sorted(overrideRates) != list(range(1, max(overrideRates) + 1)):
        raise ValueError(f"overrideRates levels must be contiguous from 1, got {sorted(overrideRates)}")

    return CompensationPlan(
        directRate=dec(merged["directRate"]),
        overrideRates=overrideRates,
        overrideMinRanks={
            int(level): Rank(rank) for level, rank in merged["overrideMinRanks"].items()
        },
        leadershipRates=_rank_table(merged["leadershipRates"], dec),
        matchingRates=_rank_table(merged["matchingRates"], dec),
        rankBonuses=_rank_table(merged["rankBonuses"], dec),
        rankRequirements=_rank_table(
            merged["rankRequirements"],
            lambda req: RankRequirement(
                directReferrals=int(req.get("directReferrals", 0)),
                personalVolume=dec(req.get("personalVolume", "0")),
                teamVolume=dec(req.get("teamVolume", "0")),
            )
        ),
        protectionLimits=_rank_table(merged["protectionLimits"], int),
        refundPolicies={
            product: RefundPolicy(
                windowDays=int(policy["windowDays"]),
                maxRefundFraction=dec(policy["maxRefundFraction"]),
                processingFee=dec(policy.get("processingFee", "0")),
            )
            for product, policy in merged["refundPolicies"].items()
        },
        currencyQuantum=dec(merged["currencyQuantum"]),
    )


# Lazy-loaded configuration cache
_PLAN_CACHE: Optional[CompensationPlan] = None


def get_compensation_plan() -> CompensationPlan:
    """
    Get compensation plan with caching.
    Builds from Config overrides on first access, then returns cached version.
    """
    global _PLAN_CACHE

    if _PLAN_CACHE is None:
        from config import Config

        _PLAN_CACHE = build_compensation_plan(Config.get(Config.COMPENSATION_PLAN) or {})
        logger.info(
            f"Loaded compensation plan: direct={_PLAN_CACHE.directRate}, "
            f"override levels={_PLAN_CACHE.maxOverrideLevel}"
        )

    return _PLAN_CACHE


def reset_compensation_plan_cache() -> None:
    """Drop cached plan (after Config changes, in tests)."""
    global _PLAN_CACHE
    _PLAN_CACHE = None

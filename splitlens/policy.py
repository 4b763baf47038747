"""Allocation policy: belief summary + risk mode -> traffic split.

Pure functions only. The caller persists whatever comes out.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from . import config
from .belief import ArmStats, BeliefSummary
from .errors import InvariantViolation
from .models import CONTROL, VARIANT

RISK_MODES = ("cautious", "balanced", "aggressive")

# Variant floor while its downside tail is worse than control's
THROTTLE_FLOOR = 0.02


@dataclass(frozen=True)
class Allocation:
    control: float
    variant: float

    def __post_init__(self):
        for name, value in (("control", self.control), ("variant", self.variant)):
            if not 0.0 <= value <= 1.0:
                raise InvariantViolation(f"{name} allocation {value!r} outside [0, 1]")

    @property
    def exposure(self) -> float:
        return self.control + self.variant


@dataclass(frozen=True)
class RiskProfile:
    # (P(variant wins) threshold, variant floor), ascending thresholds
    variant_ramp: Tuple[Tuple[float, float], ...]
    control_floor_start: float
    # (P(variant wins) threshold, control floor), ascending thresholds
    control_floor_ramp: Tuple[Tuple[float, float], ...]


RISK_PROFILES: Dict[str, RiskProfile] = {
    "cautious": RiskProfile(
        variant_ramp=((0.60, 0.10), (0.80, 0.20), (0.90, 0.35), (0.95, 0.50)),
        control_floor_start=0.75,
        control_floor_ramp=((0.60, 0.65), (0.80, 0.60), (0.90, 0.55), (0.95, 0.50)),
    ),
    "balanced": RiskProfile(
        variant_ramp=((0.60, 0.15), (0.80, 0.30), (0.90, 0.45), (0.95, 0.60)),
        control_floor_start=0.60,
        control_floor_ramp=((0.60, 0.50), (0.80, 0.40), (0.90, 0.30), (0.95, 0.25)),
    ),
    "aggressive": RiskProfile(
        variant_ramp=((0.60, 0.20), (0.80, 0.40), (0.90, 0.60), (0.95, 0.80)),
        control_floor_start=0.50,
        control_floor_ramp=((0.60, 0.35), (0.80, 0.20), (0.90, 0.10), (0.95, 0.05)),
    ),
}


@dataclass(frozen=True)
class PolicyConfig:
    # Cautious start: how much traffic sees the experiment at all, and how
    # that exposed traffic is split. 0.80 * 0.0625 = 5% variant, 75% control.
    cautious_exposure: float = 0.80
    cautious_variant_share: float = 0.0625
    min_exploration: float = config.MIN_EXPLORATION


DEFAULT_POLICY = PolicyConfig()


def cautious_start(policy: PolicyConfig = DEFAULT_POLICY) -> Allocation:
    exposure = policy.cautious_exposure
    share = policy.cautious_variant_share
    return Allocation(control=exposure * (1 - share), variant=exposure * share)


def _profile(risk_mode: str) -> RiskProfile:
    try:
        return RISK_PROFILES[risk_mode]
    except KeyError:
        raise ValueError(f"Unknown risk mode: {risk_mode!r}") from None


def variant_floor(probability_variant_wins: float, risk_mode: str, start: float) -> float:
    floor = start
    for threshold, value in _profile(risk_mode).variant_ramp:
        if probability_variant_wins >= threshold:
            floor = max(floor, value)
    return floor


def control_floor(probability_variant_wins: float, risk_mode: str) -> float:
    profile = _profile(risk_mode)
    floor = profile.control_floor_start
    for threshold, value in profile.control_floor_ramp:
        if probability_variant_wins >= threshold:
            floor = min(floor, value)
    return floor


def variant_share(
    probability_variant_wins: float,
    risk_mode: str = "cautious",
    policy: PolicyConfig = DEFAULT_POLICY,
    throttled: bool = False,
) -> float:
    """
    Variant share of exposed traffic.

    Sits on the ramp floor while control looks better, then climbs linearly
    toward the cap (1 - control floor) as P(variant wins) goes from 0.5 to 1.
    Floor and cap only move up with P(variant wins), so the result is
    non-decreasing in it. Both arms keep at least `min_exploration`.

    `throttled` (variant downside tail worse than control's) caps the ramp
    floor at THROTTLE_FLOOR; the exploration minimum still applies.
    """
    p = min(max(probability_variant_wins, 0.0), 1.0)
    m = policy.min_exploration

    cap = min(1.0 - control_floor(p, risk_mode), 1.0 - m)
    floor = variant_floor(p, risk_mode, m)
    if throttled:
        floor = min(floor, THROTTLE_FLOOR)
    floor = min(max(floor, m), cap)
    weight = max(0.0, 2.0 * p - 1.0)
    return floor + (cap - floor) * weight


def expected_loss(summary: BeliefSummary, control: ArmStats, variant: ArmStats) -> Tuple[float, Optional[str]]:
    """
    Cumulative expected loss from sending traffic to the inferior arm:
    impressions(inferior) * (RPV(superior) - RPV(inferior)).

    Returns (loss, inferior_arm); inferior_arm is None when the arms tie.
    """
    gap = summary.mean_rpv_variant - summary.mean_rpv_control
    if gap > 0:
        return control.impressions * gap, CONTROL
    if gap < 0:
        return variant.impressions * -gap, VARIANT
    return 0.0, None


def cost_of_waiting(summary: BeliefSummary, allocation: Allocation) -> float:
    """
    Exploration regret per 1000 sessions: what the current split gives up
    against always serving the better arm. Tracked, not budgeted.
    """
    exposure = allocation.exposure
    if exposure <= 0:
        return 0.0
    served = (
        allocation.control * summary.expected_rpv_control + allocation.variant * summary.expected_rpv_variant
    ) / exposure
    return max(summary.expected_best_rpv - served, 0.0) * 1000


@dataclass(frozen=True)
class PolicyResult:
    allocation: Allocation
    variant_floor: float
    control_floor: float
    expected_loss: float
    inferior_arm: Optional[str]
    safety_budget_remaining: float
    should_stop: bool
    reasoning: str
    throttled: bool = False
    cost_of_waiting_per_1000: float = 0.0


def compute_allocation(
    summary: BeliefSummary,
    control: ArmStats,
    variant: ArmStats,
    risk_mode: str,
    safety_budget: float,
    policy: PolicyConfig = DEFAULT_POLICY,
) -> PolicyResult:
    p = summary.probability_variant_wins
    throttled = summary.variant_downside_worse
    share = variant_share(p, risk_mode, policy, throttled=throttled)
    floor = variant_floor(p, risk_mode, policy.min_exploration)
    if throttled:
        floor = min(floor, THROTTLE_FLOOR)
    allocation = Allocation(control=1.0 - share, variant=share)

    loss, inferior = expected_loss(summary, control, variant)
    remaining = safety_budget - loss
    should_stop = loss > safety_budget

    reasoning = (
        f"P(variant wins) = {p * 100:.1f}%. "
        f"Mean RPV control {summary.mean_rpv_control:.4f} vs variant {summary.mean_rpv_variant:.4f}. "
        f"Allocation control {allocation.control * 100:.1f}% / variant {allocation.variant * 100:.1f}% "
        f"({risk_mode}). "
        f"Expected loss {loss:.2f} of {safety_budget:.2f} safety budget."
    )
    if throttled:
        reasoning += " CVaR throttle active: variant downside tail is worse than control's."
    regret = cost_of_waiting(summary, allocation)
    reasoning += f" Cost of waiting {regret:.2f} per 1000 sessions."
    if should_stop:
        reasoning += f" STOP: safety budget exhausted ({inferior} is inferior, {remaining:.2f} remaining)."

    return PolicyResult(
        allocation=allocation,
        variant_floor=floor,
        control_floor=control_floor(p, risk_mode),
        expected_loss=loss,
        inferior_arm=inferior,
        safety_budget_remaining=remaining,
        should_stop=should_stop,
        reasoning=reasoning,
        throttled=throttled,
        cost_of_waiting_per_1000=regret,
    )

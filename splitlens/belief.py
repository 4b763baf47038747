"""Bayesian belief model for revenue per visitor (RPV).

Each arm is modelled as

    conversion rate   p ~ Beta(alpha, beta)
    order value       V ~ Exponential(rate=lam),  lam ~ Gamma(shape, rate)
    RPV               = p * E[V] = p / lam

Both pieces are conjugate in the counters the experiment record already keeps
(impressions, conversions, revenue), so the posterior is a pure function of
those numbers and the prior. Nothing here touches the database.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from . import config

DEFAULT_CONVERSION_RATE = 0.02
DEFAULT_AVG_ORDER_VALUE = 50.0

# Weak priors: the prior counts as 10 visitors worth of conversion evidence
# and 3 orders worth of order-value evidence.
CONVERSION_PRIOR_STRENGTH = 10.0
VALUE_PRIOR_SHAPE = 3.0

MIN_LIFT_PCT = 5.0

# Lower tail used for the downside (CVaR) comparison
CVAR_QUANTILE = 0.05


@dataclass(frozen=True)
class Prior:
    alpha: float
    beta: float
    value_shape: float
    value_rate: float

    @classmethod
    def from_estimate(
        cls,
        conversion_rate: Optional[float] = None,
        avg_order_value: Optional[float] = None,
    ) -> "Prior":
        """
        Build a prior from the estimated baseline conversion rate and average
        order value (usually the product's current price). Missing or
        out-of-range estimates fall back to 2% / 50.
        """
        cr = conversion_rate if conversion_rate and 0 < conversion_rate < 1 else DEFAULT_CONVERSION_RATE
        aov = avg_order_value if avg_order_value and avg_order_value > 0 else DEFAULT_AVG_ORDER_VALUE
        return cls(
            alpha=cr * CONVERSION_PRIOR_STRENGTH,
            beta=(1 - cr) * CONVERSION_PRIOR_STRENGTH,
            value_shape=VALUE_PRIOR_SHAPE,
            # E[1/lam] = rate / (shape - 1) == aov
            value_rate=(VALUE_PRIOR_SHAPE - 1) * aov,
        )


@dataclass(frozen=True)
class ArmStats:
    impressions: int = 0
    conversions: int = 0
    revenue: float = 0.0


@dataclass(frozen=True)
class ArmPosterior:
    alpha: float
    beta: float
    value_shape: float
    value_rate: float
    conversions: int

    @property
    def mean_conversion_rate(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def mean_order_value(self) -> float:
        # value_shape >= VALUE_PRIOR_SHAPE > 1, so the mean exists
        return self.value_rate / (self.value_shape - 1)

    @property
    def mean_rpv(self) -> float:
        """Posterior mean RPV; 0 until the arm has converted at least once."""
        if self.conversions == 0:
            return 0.0
        return self.mean_conversion_rate * self.mean_order_value

    def sample_rpv(self, rng: np.random.Generator, size: int) -> np.ndarray:
        p = rng.beta(self.alpha, self.beta, size)
        lam = rng.gamma(self.value_shape, 1.0 / self.value_rate, size)
        return p / lam


def posterior(prior: Prior, stats: ArmStats) -> ArmPosterior:
    """Conjugate update of the prior with one arm's counters."""
    conversions = max(int(stats.conversions), 0)
    # Conversions can briefly outrun impressions when an order is attributed
    # before the matching impression lands.
    failures = max(int(stats.impressions) - conversions, 0)
    return ArmPosterior(
        alpha=prior.alpha + conversions,
        beta=prior.beta + failures,
        value_shape=prior.value_shape + conversions,
        value_rate=prior.value_rate + max(float(stats.revenue), 0.0),
        conversions=conversions,
    )


@dataclass(frozen=True)
class BeliefSummary:
    probability_variant_wins: float
    probability_meaningful_lift: float
    mean_rpv_control: float
    mean_rpv_variant: float
    eoc_per_1000: float
    control: ArmPosterior
    variant: ArmPosterior
    # P(control beats variant by at least the minimum lift)
    probability_meaningful_drop: float = 0.0
    # Mean of the worst CVAR_QUANTILE of RPV draws per arm
    cvar_control: float = 0.0
    cvar_variant: float = 0.0
    # E[max(RPV_control, RPV_variant)] and per-arm E[RPV] from the same draws
    expected_best_rpv: float = 0.0
    expected_rpv_control: float = 0.0
    expected_rpv_variant: float = 0.0

    @property
    def probability_control_wins(self) -> float:
        return 1.0 - self.probability_variant_wins

    @property
    def variant_downside_worse(self) -> bool:
        """True when the variant's lower tail is worse than control's."""
        return self.cvar_variant < self.cvar_control

    def probability_meaningful_lift_for(self, arm: str) -> float:
        if arm == "control":
            return self.probability_meaningful_drop
        return self.probability_meaningful_lift

    def as_dict(self) -> Dict[str, float]:
        return {
            "probability_variant_wins": self.probability_variant_wins,
            "probability_meaningful_lift": self.probability_meaningful_lift,
            "probability_meaningful_drop": self.probability_meaningful_drop,
            "mean_rpv_control": self.mean_rpv_control,
            "mean_rpv_variant": self.mean_rpv_variant,
            "eoc_per_1000": self.eoc_per_1000,
            "cvar_control": self.cvar_control,
            "cvar_variant": self.cvar_variant,
        }


def cvar(draws: np.ndarray, quantile: float = CVAR_QUANTILE) -> float:
    """Average of the lowest `quantile` share of the draws (at least one)."""
    if draws.size == 0:
        return 0.0
    cutoff = max(1, int(draws.size * quantile))
    return float(np.sort(draws)[:cutoff].mean())


def _probability_lift(base: np.ndarray, other: np.ndarray, min_lift_pct: float) -> float:
    lift = np.zeros(base.size)
    positive = base > 0
    lift[positive] = (other[positive] - base[positive]) / base[positive] * 100
    return float(np.mean(positive & (lift >= min_lift_pct)))


def summarize(
    prior: Prior,
    control: ArmStats,
    variant: ArmStats,
    samples: Optional[int] = None,
    seed: Optional[int] = None,
    min_lift_pct: float = MIN_LIFT_PCT,
) -> BeliefSummary:
    """
    Compare the two arms.

    Draws `samples` RPV values per arm from a generator seeded with `seed`,
    so identical inputs always give identical outputs.

    Returns a BeliefSummary with P(RPV_variant > RPV_control), the
    probability that either arm beats the other by at least `min_lift_pct`
    percent, posterior mean RPV per arm, the expected opportunity cost
    (per 1000 sessions) of locking in the current leader and the lower-tail
    CVaR of each arm.
    """
    samples = samples or config.MC_SAMPLES
    seed = config.MC_SEED if seed is None else seed

    control_post = posterior(prior, control)
    variant_post = posterior(prior, variant)

    rng = np.random.default_rng(seed)
    c = control_post.sample_rpv(rng, samples)
    v = variant_post.sample_rpv(rng, samples)

    probability_variant_wins = float(np.mean(v > c))

    best = np.maximum(c, v)
    leader = v if v.mean() > c.mean() else c
    eoc_per_1000 = float(np.mean(best - leader)) * 1000

    return BeliefSummary(
        probability_variant_wins=probability_variant_wins,
        probability_meaningful_lift=_probability_lift(c, v, min_lift_pct),
        mean_rpv_control=control_post.mean_rpv,
        mean_rpv_variant=variant_post.mean_rpv,
        eoc_per_1000=eoc_per_1000,
        control=control_post,
        variant=variant_post,
        probability_meaningful_drop=_probability_lift(v, c, min_lift_pct),
        cvar_control=cvar(c),
        cvar_variant=cvar(v),
        expected_best_rpv=float(best.mean()),
        expected_rpv_control=float(c.mean()),
        expected_rpv_variant=float(v.mean()),
    )


@dataclass
class BeliefState:
    """
    What gets stored in Experiment.belief_state: the prior hyperparameters,
    the counter snapshot the last summary was computed from, and that summary.
    """

    prior: Prior
    control: ArmStats = field(default_factory=ArmStats)
    variant: ArmStats = field(default_factory=ArmStats)
    summary: Dict[str, float] = field(default_factory=dict)
    updated_at: Optional[str] = None

    def observe(
        self,
        control: ArmStats,
        variant: ArmStats,
        summary: BeliefSummary,
        updated_at: Optional[str] = None,
    ) -> "BeliefState":
        return BeliefState(
            prior=self.prior,
            control=control,
            variant=variant,
            summary=summary.as_dict(),
            updated_at=updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prior": {
                "alpha": self.prior.alpha,
                "beta": self.prior.beta,
                "value_shape": self.prior.value_shape,
                "value_rate": self.prior.value_rate,
            },
            "control": {
                "impressions": self.control.impressions,
                "conversions": self.control.conversions,
                "revenue": self.control.revenue,
            },
            "variant": {
                "impressions": self.variant.impressions,
                "conversions": self.variant.conversions,
                "revenue": self.variant.revenue,
            },
            "summary": dict(self.summary),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BeliefState":
        if not data:
            return cls(prior=Prior.from_estimate())
        return cls(
            prior=Prior(**data["prior"]),
            control=ArmStats(**data.get("control", {})),
            variant=ArmStats(**data.get("variant", {})),
            summary=dict(data.get("summary") or {}),
            updated_at=data.get("updated_at"),
        )

"""Synthetic traffic for an active experiment.

Each simulated visitor is assigned through the real assignment service (so
the current split is honored), sees the product once and converts with the
configured rate for its arm. Order values vary by +/-20% around the base
price. Events are written with one bulk ingest and the allocation is
recomputed once at the end.

All randomness is seeded for full reproducibility. This variance exists only
here; live attribution always uses the exact order revenue.
"""
import logging
import random
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from . import engine, events
from .assignment import assign
from .engine import RecomputeResult
from .models import CONTROL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationConfig:
    visitors: int = 1000
    control_conversion_rate: float = 0.03
    variant_conversion_rate: float = 0.035
    base_price: float = 50.0
    # Order value = base_price * U(1 - variance, 1 + variance)
    revenue_variance: float = 0.20
    seed: int = 42
    recompute: bool = True


@dataclass(frozen=True)
class SimulationSummary:
    visitors: int
    control_impressions: int
    variant_impressions: int
    control_conversions: int
    variant_conversions: int
    control_revenue: float
    variant_revenue: float
    recompute: Optional[RecomputeResult] = None


def run_simulation(db: Session, experiment_id: int, sim: Optional[SimulationConfig] = None) -> SimulationSummary:
    if sim is None:
        sim = SimulationConfig()

    engine.get_active_experiment(db, experiment_id)
    rng = random.Random(sim.seed)

    impressions = []
    conversions = []
    totals = {
        "control_impressions": 0,
        "variant_impressions": 0,
        "control_conversions": 0,
        "variant_conversions": 0,
        "control_revenue": 0.0,
        "variant_revenue": 0.0,
    }

    for i in range(sim.visitors):
        session_id = f"sim-{sim.seed}-{experiment_id}-{i:06d}"
        variant = assign(db, session_id, experiment_id, rng=rng)
        impressions.append({"session_id": session_id, "variant": variant})
        totals[f"{variant}_impressions"] += 1

        rate = sim.control_conversion_rate if variant == CONTROL else sim.variant_conversion_rate
        if rng.random() < rate:
            spread = 1 - sim.revenue_variance + rng.random() * 2 * sim.revenue_variance
            revenue = round(sim.base_price * spread, 2)
            conversions.append({"session_id": session_id, "variant": variant, "revenue": revenue})
            totals[f"{variant}_conversions"] += 1
            totals[f"{variant}_revenue"] += revenue

    events.ingest_events(db, experiment_id, impressions=impressions, conversions=conversions)
    logger.info(
        "Simulated %d visitors for experiment %s: control %d/%d, variant %d/%d",
        sim.visitors,
        experiment_id,
        totals["control_conversions"],
        totals["control_impressions"],
        totals["variant_conversions"],
        totals["variant_impressions"],
    )

    result = engine.recompute_allocation(db, experiment_id) if sim.recompute else None
    return SimulationSummary(visitors=sim.visitors, recompute=result, **totals)

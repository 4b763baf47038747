"""Immutable experiment snapshots and the event reducer.

`reduce(snapshot, event)` is the only place counters are advanced in
Python. The persistence layer folds a batch of events through it and writes
the resulting deltas with one atomic UPDATE.
"""
import math
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Union

from .belief import ArmStats
from .errors import InvalidState
from .models import ARMS, CONTROL, STATUS_ACTIVE, Experiment


@dataclass(frozen=True)
class ImpressionObserved:
    session_id: str
    variant: str


@dataclass(frozen=True)
class ConversionObserved:
    session_id: str
    variant: str
    revenue: float


Event = Union[ImpressionObserved, ConversionObserved]


@dataclass(frozen=True)
class ExperimentSnapshot:
    experiment_id: Optional[int]
    status: str
    control: ArmStats
    variant: ArmStats
    risk_mode: str = "cautious"
    safety_budget: float = 50.0
    confidence_threshold: float = 0.95
    min_sample_size: int = 100
    min_samples_per_arm: Optional[int] = None
    min_probability_meaningful_lift: Optional[float] = None
    max_eoc_per_1000: Optional[float] = None
    promotion_check_count: int = 0
    winner: Optional[str] = None

    @property
    def total_impressions(self) -> int:
        return self.control.impressions + self.variant.impressions

    def arm(self, name: str) -> ArmStats:
        return self.control if name == CONTROL else self.variant


def snapshot_of(experiment: Experiment) -> ExperimentSnapshot:
    return ExperimentSnapshot(
        experiment_id=experiment.id,
        status=experiment.status,
        control=ArmStats(*experiment.counters("control")),
        variant=ArmStats(*experiment.counters("variant")),
        risk_mode=experiment.risk_mode,
        safety_budget=experiment.safety_budget,
        confidence_threshold=experiment.confidence_threshold,
        min_sample_size=experiment.min_sample_size,
        min_samples_per_arm=experiment.min_samples_per_arm,
        min_probability_meaningful_lift=experiment.min_probability_meaningful_lift,
        max_eoc_per_1000=experiment.max_eoc_per_1000,
        promotion_check_count=experiment.promotion_check_count or 0,
        winner=experiment.winner,
    )


def validate_event(event: Event) -> None:
    if event.variant not in ARMS:
        raise ValueError(f"Unknown variant: {event.variant!r}")
    if isinstance(event, ConversionObserved):
        if not math.isfinite(event.revenue):
            raise ValueError(f"Revenue must be a finite number, got {event.revenue}")
        if event.revenue < 0:
            raise ValueError(f"Revenue must be non-negative, got {event.revenue}")


def reduce(snapshot: ExperimentSnapshot, event: Event) -> ExperimentSnapshot:
    """Return the snapshot with one more event applied."""
    if snapshot.status != STATUS_ACTIVE:
        raise InvalidState(f"Experiment {snapshot.experiment_id} is not active (status: {snapshot.status})")
    validate_event(event)

    stats = snapshot.arm(event.variant)
    if isinstance(event, ImpressionObserved):
        stats = replace(stats, impressions=stats.impressions + 1)
    else:
        stats = replace(
            stats,
            conversions=stats.conversions + 1,
            revenue=stats.revenue + event.revenue,
        )
    return replace(snapshot, **{event.variant: stats})


def fold(snapshot: ExperimentSnapshot, events: Iterable[Event]) -> ExperimentSnapshot:
    for event in events:
        snapshot = reduce(snapshot, event)
    return snapshot


def empty_snapshot(experiment_id: Optional[int] = None, status: str = STATUS_ACTIVE) -> ExperimentSnapshot:
    return ExperimentSnapshot(
        experiment_id=experiment_id,
        status=status,
        control=ArmStats(),
        variant=ArmStats(),
    )

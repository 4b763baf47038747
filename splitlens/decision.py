"""Promotion / abort decision rule.

    draft -> active -> completed   (a winner was promoted)
                    -> cancelled   (safety budget exhausted, or stopped by hand)

`decide` is pure. Deciding on a terminal snapshot is allowed and changes
nothing, so callers may evaluate speculatively.
"""
from dataclasses import dataclass
from typing import List, Optional

from .belief import MIN_LIFT_PCT, BeliefSummary
from .errors import InvalidState
from .models import (
    CONTROL,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    TERMINAL_STATUSES,
    VARIANT,
)
from .policy import Allocation, PolicyResult
from .state import ExperimentSnapshot


@dataclass(frozen=True)
class Decision:
    promoted: bool
    stopped: bool
    winner: Optional[str]
    status: str
    reasoning: str
    changed: bool = False
    # Allocation to persist; None keeps the current split
    allocation: Optional[Allocation] = None


def promotion_allocation(winner: str) -> Allocation:
    if winner == VARIANT:
        return Allocation(control=0.0, variant=1.0)
    return Allocation(control=1.0, variant=0.0)


def terminal_decision(snapshot: ExperimentSnapshot) -> Decision:
    return Decision(
        promoted=snapshot.status == STATUS_COMPLETED,
        stopped=snapshot.status == STATUS_CANCELLED,
        winner=snapshot.winner,
        status=snapshot.status,
        reasoning=f"Experiment already {snapshot.status}; nothing to decide.",
    )


def promotion_gate_failures(snapshot: ExperimentSnapshot, summary: BeliefSummary, winner: str) -> List[str]:
    """
    Optional checks on top of the confidence threshold. Each is skipped
    when its setting on the experiment is None.
    """
    failures = []
    per_arm = snapshot.min_samples_per_arm
    if per_arm is not None:
        smallest = min(snapshot.control.impressions, snapshot.variant.impressions)
        if smallest < per_arm:
            failures.append(f"per-arm sample size {smallest} below {per_arm}")

    lift_bar = snapshot.min_probability_meaningful_lift
    if lift_bar is not None:
        p_lift = summary.probability_meaningful_lift_for(winner)
        if p_lift < lift_bar:
            failures.append(
                f"P({winner} ahead by {MIN_LIFT_PCT:g}%+) = {p_lift * 100:.1f}% below {lift_bar * 100:.1f}%"
            )

    max_eoc = snapshot.max_eoc_per_1000
    if max_eoc is not None and summary.eoc_per_1000 > max_eoc:
        failures.append(f"EOC {summary.eoc_per_1000:.2f} per 1000 sessions above {max_eoc:.2f}")
    return failures


def decide(
    snapshot: ExperimentSnapshot,
    summary: BeliefSummary,
    policy_result: PolicyResult,
) -> Decision:
    if snapshot.status in TERMINAL_STATUSES:
        return terminal_decision(snapshot)
    if snapshot.status != STATUS_ACTIVE:
        raise InvalidState(f"Experiment {snapshot.experiment_id} is not active (status: {snapshot.status})")

    p_variant = summary.probability_variant_wins
    p_control = summary.probability_control_wins
    threshold = snapshot.confidence_threshold
    total = snapshot.total_impressions
    enough_samples = total >= snapshot.min_sample_size

    facts = (
        f"P(variant wins) = {p_variant * 100:.1f}%, P(control wins) = {p_control * 100:.1f}%, "
        f"threshold {threshold * 100:.1f}%. "
        f"Impressions {total} (control {snapshot.control.impressions}, "
        f"variant {snapshot.variant.impressions}), minimum {snapshot.min_sample_size}. "
        f"Expected loss {policy_result.expected_loss:.2f} of {snapshot.safety_budget:.2f} budget. "
        f"EOC {summary.eoc_per_1000:.2f} per 1000 sessions."
    )

    winner = None
    if p_variant >= threshold:
        winner = VARIANT
    elif p_control >= threshold:
        winner = CONTROL

    gate_failures = promotion_gate_failures(snapshot, summary, winner) if winner else []

    if winner and enough_samples and not gate_failures:
        return Decision(
            promoted=True,
            stopped=False,
            winner=winner,
            status=STATUS_COMPLETED,
            reasoning=f"PROMOTE {winner}: confidence threshold crossed with enough samples. {facts}",
            changed=True,
            allocation=promotion_allocation(winner),
        )

    if policy_result.should_stop:
        return Decision(
            promoted=False,
            stopped=True,
            winner=None,
            status=STATUS_CANCELLED,
            reasoning=(
                f"STOP: expected loss on {policy_result.inferior_arm} exceeded the safety budget. {facts}"
            ),
            changed=True,
        )

    if winner and not enough_samples:
        why = f"{winner} leads but sample size is below the minimum."
    elif winner:
        why = f"{winner} leads but the promotion gate is not met: {'; '.join(gate_failures)}."
    else:
        why = "No arm has crossed the confidence threshold."
    return Decision(
        promoted=False,
        stopped=False,
        winner=None,
        status=STATUS_ACTIVE,
        reasoning=f"CONTINUE: {why} {facts}",
    )

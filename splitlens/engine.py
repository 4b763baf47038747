"""Experiment lifecycle: the persistence boundary around the pure model.

belief.summarize -> policy.compute_allocation -> decision.decide are all pure;
this module loads the record, runs them and writes the result back under the
row's optimistic lock.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt

from . import belief, hooks
from .belief import ArmStats, BeliefState, Prior
from .decision import Decision, decide, terminal_decision
from .errors import ConcurrencyConflict, InvalidState, InvariantViolation, NotFound
from .models import (
    ARMS,
    CONTROL,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    VARIANT,
    Experiment,
    utcnow,
)
from .policy import (
    DEFAULT_POLICY,
    RISK_MODES,
    Allocation,
    PolicyConfig,
    cautious_start,
    compute_allocation,
)
from .state import snapshot_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecomputeResult:
    experiment_id: int
    allocation: Allocation
    probability_variant_wins: float
    mean_rpv_control: float
    mean_rpv_variant: float
    eoc_per_1000: float
    expected_loss: float
    safety_budget_remaining: float
    should_stop: bool
    reasoning: str
    throttled: bool = False
    cost_of_waiting_per_1000: float = 0.0


# Re-run a read-then-write once if its optimistic write lost a race
retry_once = retry(
    retry=retry_if_exception_type(ConcurrencyConflict),
    stop=stop_after_attempt(2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def commit(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as err:
        db.rollback()
        raise ConcurrencyConflict(str(err)) from err


def check_invariants(experiment: Experiment) -> None:
    for arm in ARMS:
        impressions, conversions, revenue = experiment.counters(arm)
        if not math.isfinite(revenue):
            raise InvariantViolation(f"Experiment {experiment.id} has non-finite {arm} revenue: {revenue}")
        if impressions < 0 or conversions < 0 or revenue < 0:
            raise InvariantViolation(
                f"Experiment {experiment.id} has negative {arm} counters: "
                f"impressions={impressions}, conversions={conversions}, revenue={revenue}"
            )
    for name in ("control_allocation", "variant_allocation"):
        value = getattr(experiment, name)
        if value is None or not 0.0 <= value <= 1.0:
            raise InvariantViolation(f"Experiment {experiment.id} has {name}={value!r} outside [0, 1]")


def get_experiment(db: Session, experiment_id: int) -> Experiment:
    experiment = db.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFound(f"Experiment {experiment_id} not found")
    return experiment


def get_active_experiment(db: Session, experiment_id: int) -> Experiment:
    experiment = get_experiment(db, experiment_id)
    if experiment.status != STATUS_ACTIVE:
        raise InvalidState(f"Experiment {experiment_id} is not active (status: {experiment.status})")
    return experiment


def list_experiments(db: Session) -> List[Experiment]:
    return db.query(Experiment).order_by(Experiment.created_at.desc(), Experiment.id.desc()).all()


def active_experiment_for_product(db: Session, product_id: str) -> Optional[Experiment]:
    return (
        db.query(Experiment)
        .filter(Experiment.product_id == product_id, Experiment.status == STATUS_ACTIVE)
        .first()
    )


def create_experiment(
    db: Session,
    name: str,
    product_id: Optional[str] = None,
    test_type: str = "price",
    confidence_threshold: float = 0.95,
    min_sample_size: int = 100,
    min_samples_per_arm: Optional[int] = None,
    min_probability_meaningful_lift: Optional[float] = None,
    max_eoc_per_1000: Optional[float] = None,
) -> Experiment:
    if not 0.5 < confidence_threshold <= 1.0:
        raise ValueError(f"confidence_threshold must be in (0.5, 1], got {confidence_threshold}")
    if min_sample_size < 0:
        raise ValueError(f"min_sample_size must be non-negative, got {min_sample_size}")
    if min_samples_per_arm is not None and min_samples_per_arm < 0:
        raise ValueError(f"min_samples_per_arm must be non-negative, got {min_samples_per_arm}")
    if min_probability_meaningful_lift is not None and not 0.0 < min_probability_meaningful_lift <= 1.0:
        raise ValueError(
            f"min_probability_meaningful_lift must be in (0, 1], got {min_probability_meaningful_lift}"
        )
    if max_eoc_per_1000 is not None and max_eoc_per_1000 < 0:
        raise ValueError(f"max_eoc_per_1000 must be non-negative, got {max_eoc_per_1000}")

    experiment = Experiment(
        name=name,
        product_id=product_id,
        test_type=test_type,
        status=STATUS_DRAFT,
        confidence_threshold=confidence_threshold,
        min_sample_size=min_sample_size,
        min_samples_per_arm=min_samples_per_arm,
        min_probability_meaningful_lift=min_probability_meaningful_lift,
        max_eoc_per_1000=max_eoc_per_1000,
    )
    db.add(experiment)
    db.commit()
    db.refresh(experiment)
    logger.info("Created draft experiment %s (%s) for product %s", experiment.id, name, product_id)
    return experiment


@retry_once
def activate(
    db: Session,
    experiment_id: int,
    conversion_rate: Optional[float] = None,
    avg_order_value: Optional[float] = None,
    risk_mode: str = "cautious",
    safety_budget: float = 50.0,
    policy: PolicyConfig = DEFAULT_POLICY,
) -> Experiment:
    """
    Move a draft experiment to active: seed the belief state from the
    estimated baseline conversion rate / order value and start with the
    cautious split.
    """
    if risk_mode not in RISK_MODES:
        raise ValueError(f"Unknown risk mode: {risk_mode!r}")
    if safety_budget < 0:
        raise ValueError(f"safety_budget must be non-negative, got {safety_budget}")

    experiment = get_experiment(db, experiment_id)
    if experiment.status != STATUS_DRAFT:
        raise InvalidState(f"Only draft experiments can be activated (status: {experiment.status})")

    if experiment.product_id is not None:
        conflict = active_experiment_for_product(db, experiment.product_id)
        if conflict is not None:
            raise InvalidState(
                f"Product {experiment.product_id} already has active experiment {conflict.id}"
            )

    prior = Prior.from_estimate(conversion_rate, avg_order_value)
    allocation = cautious_start(policy)

    experiment.status = STATUS_ACTIVE
    experiment.start_date = utcnow()
    experiment.risk_mode = risk_mode
    experiment.safety_budget = safety_budget
    experiment.control_allocation = allocation.control
    experiment.variant_allocation = allocation.variant
    experiment.belief_state = BeliefState(prior=prior, updated_at=utcnow().isoformat()).to_dict()
    check_invariants(experiment)
    commit(db)
    db.refresh(experiment)

    logger.info(
        "Activated experiment %s: control %.1f%% / variant %.1f%% (exposure %.1f%%), %s, budget %.2f",
        experiment.id,
        allocation.control * 100,
        allocation.variant * 100,
        allocation.exposure * 100,
        risk_mode,
        safety_budget,
    )
    return experiment


def _evaluate_model(experiment: Experiment, policy: PolicyConfig, samples: Optional[int], seed: Optional[int]):
    state = BeliefState.from_dict(experiment.belief_state)
    control = ArmStats(*experiment.counters(CONTROL))
    variant = ArmStats(*experiment.counters(VARIANT))
    summary = belief.summarize(state.prior, control, variant, samples=samples, seed=seed)
    policy_result = compute_allocation(
        summary,
        control,
        variant,
        risk_mode=experiment.risk_mode,
        safety_budget=experiment.safety_budget,
        policy=policy,
    )
    new_state = state.observe(control, variant, summary, updated_at=utcnow().isoformat())
    return summary, policy_result, new_state


@retry_once
def recompute_allocation(
    db: Session,
    experiment_id: int,
    policy: PolicyConfig = DEFAULT_POLICY,
    samples: Optional[int] = None,
    seed: Optional[int] = None,
) -> RecomputeResult:
    """
    Belief model -> allocation policy, persisted. Does not change status;
    `should_stop` is only reported here and acted on by evaluate_decision.
    """
    experiment = get_active_experiment(db, experiment_id)
    summary, policy_result, new_state = _evaluate_model(experiment, policy, samples, seed)

    experiment.control_allocation = policy_result.allocation.control
    experiment.variant_allocation = policy_result.allocation.variant
    experiment.belief_state = new_state.to_dict()
    check_invariants(experiment)
    commit(db)

    logger.info(
        "Recomputed experiment %s: control %.1f%% / variant %.1f%%. %s",
        experiment_id,
        policy_result.allocation.control * 100,
        policy_result.allocation.variant * 100,
        policy_result.reasoning,
    )
    return RecomputeResult(
        experiment_id=experiment_id,
        allocation=policy_result.allocation,
        probability_variant_wins=summary.probability_variant_wins,
        mean_rpv_control=summary.mean_rpv_control,
        mean_rpv_variant=summary.mean_rpv_variant,
        eoc_per_1000=summary.eoc_per_1000,
        expected_loss=policy_result.expected_loss,
        safety_budget_remaining=policy_result.safety_budget_remaining,
        should_stop=policy_result.should_stop,
        reasoning=policy_result.reasoning,
        throttled=policy_result.throttled,
        cost_of_waiting_per_1000=policy_result.cost_of_waiting_per_1000,
    )


@retry_once
def evaluate_decision(
    db: Session,
    experiment_id: int,
    policy: PolicyConfig = DEFAULT_POLICY,
    samples: Optional[int] = None,
    seed: Optional[int] = None,
) -> Decision:
    """
    Run the decision rule against fresh counters. Terminal experiments come
    back unchanged; draft experiments raise InvalidState.
    """
    experiment = get_experiment(db, experiment_id)
    if experiment.is_terminal:
        return terminal_decision(snapshot_of(experiment))
    if experiment.status != STATUS_ACTIVE:
        raise InvalidState(f"Experiment {experiment_id} is not active (status: {experiment.status})")

    summary, policy_result, new_state = _evaluate_model(experiment, policy, samples, seed)
    result = decide(snapshot_of(experiment), summary, policy_result)

    experiment.promotion_check_count = (experiment.promotion_check_count or 0) + 1
    experiment.belief_state = new_state.to_dict()
    if result.changed:
        experiment.status = result.status
        experiment.winner = result.winner
        experiment.end_date = utcnow()
        if result.allocation is not None:
            experiment.control_allocation = result.allocation.control
            experiment.variant_allocation = result.allocation.variant
    check_invariants(experiment)
    commit(db)

    if result.changed:
        logger.info("Experiment %s -> %s. %s", experiment_id, result.status, result.reasoning)
        hooks.notify_decision(experiment, result)
    else:
        logger.debug("Experiment %s stays active. %s", experiment_id, result.reasoning)
    return result


@retry_once
def cancel(db: Session, experiment_id: int, reason: str = "Stopped manually.") -> Decision:
    """Stop an experiment by hand. Allocations are left as they were."""
    experiment = get_experiment(db, experiment_id)
    if experiment.is_terminal:
        return terminal_decision(snapshot_of(experiment))

    was_active = experiment.status == STATUS_ACTIVE
    experiment.status = STATUS_CANCELLED
    experiment.end_date = utcnow()
    commit(db)

    result = Decision(
        promoted=False,
        stopped=True,
        winner=None,
        status=STATUS_CANCELLED,
        reasoning=f"CANCELLED: {reason}",
        changed=True,
    )
    logger.info("Experiment %s cancelled: %s", experiment_id, reason)
    # A draft was never deployed, so there is nothing to roll back
    if was_active:
        hooks.notify_decision(experiment, result)
    return result

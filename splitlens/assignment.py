"""Sticky visitor assignment.

A session is assigned to an arm once per experiment, by a weighted coin flip
on the experiment's *current* split. The unique (session_id, experiment_id)
key is the source of truth: when two first visits race, whichever insert
lands first wins and the other request reads that row back.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, engine
from .errors import ConcurrencyConflict
from .models import CONTROL, VARIANT, Experiment, SessionAssignment, utcnow

logger = logging.getLogger(__name__)


def find_assignment(db: Session, session_id: str, experiment_id: int) -> Optional[SessionAssignment]:
    return (
        db.query(SessionAssignment)
        .filter(
            SessionAssignment.session_id == session_id,
            SessionAssignment.experiment_id == experiment_id,
        )
        .first()
    )


def session_assignments(db: Session, session_id: str) -> List[SessionAssignment]:
    return db.query(SessionAssignment).filter(SessionAssignment.session_id == session_id).all()


def draw_variant(experiment: Experiment, rng=None) -> str:
    """
    Weighted coin flip on the current split. The two allocations need not
    sum to 1 (cautious start), so they are normalized among exposed traffic.
    """
    exposure = experiment.exposure
    if exposure <= 0:
        return CONTROL
    u = (rng or random).random()
    return CONTROL if u < experiment.control_allocation / exposure else VARIANT


def assign(
    db: Session,
    session_id: str,
    experiment_id: int,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Return the session's arm for this experiment, creating the assignment on
    first sight. Raises NotFound / InvalidState when there is no active
    experiment; callers show control in that case.
    """
    experiment = engine.get_active_experiment(db, experiment_id)

    existing = find_assignment(db, session_id, experiment_id)
    if existing is not None:
        # Never reassigned, even once expired for attribution
        return existing.variant

    now = now or utcnow()
    variant = draw_variant(experiment, rng)
    db.add(
        SessionAssignment(
            session_id=session_id,
            experiment_id=experiment_id,
            variant=variant,
            assigned_at=now,
            expires_at=now + timedelta(days=config.ASSIGNMENT_TTL_DAYS),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_assignment(db, session_id, experiment_id)
        if winner is None:
            raise ConcurrencyConflict(
                f"Assignment for session {session_id} in experiment {experiment_id} failed without a winner"
            )
        logger.debug(
            "Session %s lost the assignment race for experiment %s, using %s",
            session_id,
            experiment_id,
            winner.variant,
        )
        return winner.variant

    logger.debug("Assigned session %s to %s in experiment %s", session_id, variant, experiment_id)
    return variant

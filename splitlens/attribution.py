"""Order attribution.

An order arrives out-of-band (e.g. an order-paid webhook) tagged with the
storefront session id. For every product in it that has an active
experiment, the session's recorded arm gets one conversion and the line
revenue, then the experiment is recomputed and re-evaluated.

The pipeline has no replay protection of its own: pass an order_id and the
conversion is stored under the key "<order_id>:<experiment_id>", which makes
a replayed order a no-op.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from . import config, engine, events
from .assignment import session_assignments
from .decision import Decision
from .errors import InvalidState, NotFound
from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    price: float
    quantity: int = 1

    @property
    def revenue(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True)
class Order:
    session_id: str
    line_items: List[LineItem]
    order_id: Optional[str] = None


@dataclass
class AttributionResult:
    attributed: List[Dict] = field(default_factory=list)
    skipped: List[Dict] = field(default_factory=list)
    decisions: Dict[int, Decision] = field(default_factory=dict)


def dedup_key(order_id: Optional[str], experiment_id: int) -> Optional[str]:
    if not order_id:
        return None
    return f"{order_id}:{experiment_id}"


def attribute_order(
    db: Session,
    order: Order,
    recompute: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> AttributionResult:
    result = AttributionResult()
    now = now or utcnow()
    recompute = config.RECOMPUTE_ON_ATTRIBUTION if recompute is None else recompute

    if not order.line_items:
        logger.info("Order %s has no line items, skipping attribution", order.order_id)
        return result

    assignments = {a.experiment_id: a for a in session_assignments(db, order.session_id)}
    if not assignments:
        logger.info("No assignments for session %s, skipping attribution", order.session_id)
        return result

    # experiment_id -> revenue; several lines for one product are one conversion
    revenue_by_experiment: "OrderedDict[int, float]" = OrderedDict()
    for item in order.line_items:
        experiment = engine.active_experiment_for_product(db, item.product_id)
        if experiment is None:
            result.skipped.append({"product_id": item.product_id, "reason": "no active experiment"})
            continue

        assignment = assignments.get(experiment.id)
        if assignment is None:
            # The session never saw this experiment (e.g. it started later)
            logger.info(
                "Session %s has no assignment for experiment %s, skipping",
                order.session_id,
                experiment.id,
            )
            result.skipped.append(
                {"product_id": item.product_id, "experiment_id": experiment.id, "reason": "not assigned"}
            )
            continue
        if assignment.is_expired(now):
            result.skipped.append(
                {"product_id": item.product_id, "experiment_id": experiment.id, "reason": "assignment expired"}
            )
            continue

        revenue_by_experiment[experiment.id] = revenue_by_experiment.get(experiment.id, 0.0) + item.revenue

    for experiment_id, revenue in revenue_by_experiment.items():
        variant = assignments[experiment_id].variant
        try:
            event = events.record_conversion(
                db,
                experiment_id,
                session_id=order.session_id,
                variant=variant,
                revenue=revenue,
                dedup_key=dedup_key(order.order_id, experiment_id),
                occurred_at=now,
            )
        except (InvalidState, NotFound) as err:
            # Promoted or stopped since the lookup above
            logger.info("Experiment %s closed before order %s was recorded: %s", experiment_id, order.order_id, err)
            result.skipped.append({"experiment_id": experiment_id, "reason": "experiment no longer active"})
            continue
        if event is None:
            result.skipped.append({"experiment_id": experiment_id, "reason": "duplicate"})
            continue

        logger.info(
            "Attributed order %s to %s in experiment %s: %.2f",
            order.order_id,
            variant,
            experiment_id,
            revenue,
        )
        result.attributed.append({"experiment_id": experiment_id, "variant": variant, "revenue": revenue})

    if recompute:
        for item in result.attributed:
            experiment_id = item["experiment_id"]
            try:
                engine.recompute_allocation(db, experiment_id)
            except InvalidState as err:
                logger.info("Skipping recompute for experiment %s: %s", experiment_id, err)
            result.decisions[experiment_id] = engine.evaluate_decision(db, experiment_id)

    return result

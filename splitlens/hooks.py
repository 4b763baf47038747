"""Side effects for experiment decisions.

The engine never touches the storefront. When an experiment is promoted,
aborted or cancelled it hands a small JSON payload to every registered
callable and, if DECISION_WEBHOOK_URL is set, POSTs the same payload there so
an external system can apply or roll back the price/content change.
"""
import logging
from typing import Any, Callable, Dict, List

import requests

from . import config

logger = logging.getLogger(__name__)

DecisionHook = Callable[[Dict[str, Any]], None]

_hooks: List[DecisionHook] = []


def register_hook(hook: DecisionHook) -> DecisionHook:
    _hooks.append(hook)
    return hook


def unregister_hook(hook: DecisionHook) -> None:
    if hook in _hooks:
        _hooks.remove(hook)


def clear_hooks() -> None:
    _hooks.clear()


def decision_payload(experiment: Any, decision: Any) -> Dict[str, Any]:
    """
    experiment: an Experiment row (after the decision was committed)
    decision: a decision.Decision

    Returns:
      {
        "experiment_id": 1,
        "product_id": "gid://shopify/Product/1",
        "test_type": "price",
        "status": "completed" | "cancelled",
        "promoted": true,
        "stopped": false,
        "winner": "variant" | "control" | null,
        "control_allocation": 0.0,
        "variant_allocation": 1.0,
        "reasoning": "..."
      }
    """
    return {
        "experiment_id": experiment.id,
        "product_id": experiment.product_id,
        "test_type": experiment.test_type,
        "status": decision.status,
        "promoted": decision.promoted,
        "stopped": decision.stopped,
        "winner": decision.winner,
        "control_allocation": experiment.control_allocation,
        "variant_allocation": experiment.variant_allocation,
        "reasoning": decision.reasoning,
    }


def _post_webhook(url: str, payload: Dict[str, Any]) -> None:
    resp = requests.post(url, json=payload, timeout=config.WEBHOOK_TIMEOUT)
    resp.raise_for_status()


def notify_decision(experiment: Any, decision: Any) -> None:
    """
    Fan the decision out. Runs after the status change is committed, so a
    failing receiver is logged and never rolls the decision back.
    """
    payload = decision_payload(experiment, decision)

    for hook in list(_hooks):
        try:
            hook(payload)
        except Exception:
            logger.exception("Decision hook %r failed for experiment %s", hook, experiment.id)

    url = config.DECISION_WEBHOOK_URL
    if url:
        try:
            _post_webhook(url, payload)
        except requests.RequestException as err:
            logger.error("Decision webhook %s failed for experiment %s: %s", url, experiment.id, err)

"""Impression / conversion recording.

Every write inserts the append-only event rows and bumps the experiment's
aggregate counters in the same transaction, so the counters always equal the
sum of the events (see `reconcile`). Counters are bumped with a single
`UPDATE ... SET x = x + n` so concurrent writers never lose increments.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import engine
from .errors import ConcurrencyConflict, InvariantViolation
from .models import (
    ARMS,
    STATUS_ACTIVE,
    ConversionEvent,
    Experiment,
    ImpressionEvent,
    utcnow,
)
from .state import (
    ConversionObserved,
    ExperimentSnapshot,
    ImpressionObserved,
    empty_snapshot,
    fold,
)

logger = logging.getLogger(__name__)

EVENT_IMPRESSION = "impression"
EVENT_CONVERSION = "conversion"

TIMESERIES_COLUMNS = [
    "period",
    "variant",
    "impressions",
    "conversions",
    "revenue",
    "cumulative_impressions",
    "cumulative_revenue",
    "rpv",
]


@dataclass
class IngestResult:
    impressions: List[ImpressionEvent] = field(default_factory=list)
    conversions: List[ConversionEvent] = field(default_factory=list)
    duplicates: int = 0

    def counts(self) -> Dict[str, int]:
        return {
            "impressions": len(self.impressions),
            "conversions": len(self.conversions),
            "duplicates": self.duplicates,
        }


def _increment(db: Session, experiment_id: int, delta: ExperimentSnapshot) -> None:
    values: Dict[str, Any] = {}
    for arm in ARMS:
        stats = delta.arm(arm)
        if stats.impressions:
            col = getattr(Experiment, f"{arm}_impressions")
            values[f"{arm}_impressions"] = col + stats.impressions
        if stats.conversions:
            col = getattr(Experiment, f"{arm}_conversions")
            values[f"{arm}_conversions"] = col + stats.conversions
        if stats.revenue:
            col = getattr(Experiment, f"{arm}_revenue")
            values[f"{arm}_revenue"] = col + stats.revenue
    if not values:
        return

    # Bumping the version makes any in-flight recompute of this row stale
    values["version"] = Experiment.version + 1
    values["updated_at"] = utcnow()

    stmt = (
        update(Experiment)
        .where(Experiment.id == experiment_id, Experiment.status == STATUS_ACTIVE)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        # Raises NotFound / InvalidState when the experiment moved on meanwhile
        engine.get_active_experiment(db, experiment_id)
        raise ConcurrencyConflict(f"Counter update for experiment {experiment_id} matched no active row")

    experiment = db.get(Experiment, experiment_id, populate_existing=True)
    try:
        engine.check_invariants(experiment)
    except InvariantViolation:
        db.rollback()
        raise


def _existing_keys(db: Session, keys: List[str]) -> set:
    if not keys:
        return set()
    stmt = select(ConversionEvent.dedup_key).where(ConversionEvent.dedup_key.in_(keys))
    return set(db.execute(stmt).scalars())


def ingest_events(
    db: Session,
    experiment_id: int,
    impressions: Iterable[Dict[str, Any]] = (),
    conversions: Iterable[Dict[str, Any]] = (),
) -> IngestResult:
    """
    Record a batch of impressions and conversions with one counter update and
    one commit. Does not recompute the allocation; call
    engine.recompute_allocation once the batch is in.

    impressions: dicts with session_id, variant, optional occurred_at
    conversions: dicts with session_id, variant, revenue, optional
                 occurred_at and dedup_key

    Conversions whose dedup_key is already stored (or repeated in the batch)
    are skipped and counted in `duplicates`.
    """
    engine.get_active_experiment(db, experiment_id)
    now = utcnow()

    impression_rows = [
        ImpressionEvent(
            experiment_id=experiment_id,
            session_id=str(item["session_id"]),
            variant=item["variant"],
            occurred_at=item.get("occurred_at") or now,
        )
        for item in impressions
    ]

    conversions = list(conversions)
    stored = _existing_keys(db, [c["dedup_key"] for c in conversions if c.get("dedup_key")])
    seen = set(stored)
    duplicates = 0
    conversion_rows = []
    for item in conversions:
        key = item.get("dedup_key")
        if key:
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)
        conversion_rows.append(
            ConversionEvent(
                experiment_id=experiment_id,
                session_id=str(item["session_id"]),
                variant=item["variant"],
                revenue=float(item["revenue"]),
                occurred_at=item.get("occurred_at") or now,
                dedup_key=key,
            )
        )

    observed = [ImpressionObserved(r.session_id, r.variant) for r in impression_rows]
    observed += [ConversionObserved(r.session_id, r.variant, r.revenue) for r in conversion_rows]
    # Validates variants / revenue before anything is written
    delta = fold(empty_snapshot(experiment_id), observed)

    result = IngestResult(impressions=impression_rows, conversions=conversion_rows, duplicates=duplicates)
    if not observed:
        return result

    _increment(db, experiment_id, delta)
    db.add_all(impression_rows)
    db.add_all(conversion_rows)
    try:
        db.commit()
    except IntegrityError as err:
        db.rollback()
        raise ConcurrencyConflict(f"Conversion de-duplication key inserted concurrently: {err}") from err

    logger.debug(
        "Experiment %s: +%d impressions, +%d conversions (%d duplicates skipped)",
        experiment_id,
        len(impression_rows),
        len(conversion_rows),
        duplicates,
    )
    return result


def record_impression(
    db: Session,
    experiment_id: int,
    session_id: str,
    variant: str,
    occurred_at: Optional[datetime] = None,
) -> ImpressionEvent:
    result = ingest_events(
        db,
        experiment_id,
        impressions=[{"session_id": session_id, "variant": variant, "occurred_at": occurred_at}],
    )
    return result.impressions[0]


def record_conversion(
    db: Session,
    experiment_id: int,
    session_id: str,
    variant: str,
    revenue: float,
    dedup_key: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[ConversionEvent]:
    """
    Record one conversion. Returns None when `dedup_key` was already
    recorded; without a key every call counts.
    """
    item = {
        "session_id": session_id,
        "variant": variant,
        "revenue": revenue,
        "dedup_key": dedup_key,
        "occurred_at": occurred_at,
    }
    try:
        result = ingest_events(db, experiment_id, conversions=[item])
    except ConcurrencyConflict:
        # Another request stored the same key between our check and insert
        if dedup_key and _existing_keys(db, [dedup_key]):
            logger.info("Conversion %s already recorded, skipping", dedup_key)
            return None
        raise
    if result.duplicates:
        logger.info("Conversion %s already recorded, skipping", dedup_key)
        return None
    return result.conversions[0]


def record_impressions_bulk(db: Session, experiment_id: int, items: Iterable[Dict[str, Any]]) -> IngestResult:
    return ingest_events(db, experiment_id, impressions=items)


def record_conversions_bulk(db: Session, experiment_id: int, items: Iterable[Dict[str, Any]]) -> IngestResult:
    return ingest_events(db, experiment_id, conversions=items)


def load_events_csv(file_obj) -> pd.DataFrame:
    """
    Read a CSV of raw events into a pandas DataFrame.

    Expected columns:
    - session_id
    - variant ("control" / "variant")
    - event ("impression" / "conversion")
    - revenue (conversions only, optional column)
    - occurred_at (optional, ISO timestamps)
    - dedup_key (optional)
    """
    # Everything as text; revenue and timestamps are converted below
    df = pd.read_csv(file_obj, dtype=str)
    required_cols = {"session_id", "variant", "event"}
    if not required_cols.issubset(df.columns):
        missing = required_cols - set(df.columns)
        raise ValueError(f"CSV is missing required columns: {', '.join(sorted(missing))}")

    df["variant"] = df["variant"].astype(str).str.strip().str.lower()
    df["event"] = df["event"].astype(str).str.strip().str.lower()

    bad_variants = set(df["variant"]) - set(ARMS)
    if bad_variants:
        raise ValueError(f"Unknown variants in CSV: {', '.join(sorted(bad_variants))}")
    bad_events = set(df["event"]) - {EVENT_IMPRESSION, EVENT_CONVERSION}
    if bad_events:
        raise ValueError(f"Unknown event types in CSV: {', '.join(sorted(bad_events))}")

    if "revenue" not in df.columns:
        df["revenue"] = 0.0
    df["revenue"] = pd.to_numeric(df["revenue"], errors="coerce").fillna(0.0)
    if not np.isfinite(df["revenue"]).all():
        raise ValueError("CSV contains non-finite revenue")
    if (df["revenue"] < 0).any():
        raise ValueError("CSV contains negative revenue")

    if "occurred_at" in df.columns:
        df["occurred_at"] = pd.to_datetime(df["occurred_at"], utc=True).dt.tz_convert(None)
    return df


def _row_time(value) -> Optional[datetime]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def ingest_dataframe(db: Session, experiment_id: int, df: pd.DataFrame) -> IngestResult:
    """Bulk-ingest a frame shaped like load_events_csv's output."""
    impressions = []
    conversions = []
    for row in df.to_dict("records"):
        item = {
            "session_id": row["session_id"],
            "variant": row["variant"],
            "occurred_at": _row_time(row.get("occurred_at")),
        }
        if row["event"] == EVENT_CONVERSION:
            key = row.get("dedup_key")
            item["revenue"] = float(row.get("revenue") or 0.0)
            item["dedup_key"] = None if key is None or pd.isna(key) else str(key)
            conversions.append(item)
        else:
            impressions.append(item)
    return ingest_events(db, experiment_id, impressions=impressions, conversions=conversions)


def _events_frame(db: Session, experiment_id: int) -> pd.DataFrame:
    conn = db.connection()
    imp = pd.read_sql(
        select(ImpressionEvent.variant, ImpressionEvent.occurred_at).where(
            ImpressionEvent.experiment_id == experiment_id
        ),
        conn,
    )
    conv = pd.read_sql(
        select(ConversionEvent.variant, ConversionEvent.revenue, ConversionEvent.occurred_at).where(
            ConversionEvent.experiment_id == experiment_id
        ),
        conn,
    )
    imp["revenue"] = 0.0
    imp["impressions"] = 1
    imp["conversions"] = 0
    conv["impressions"] = 0
    conv["conversions"] = 1

    frames = [f for f in (imp, conv) if not f.empty]
    if not frames:
        return pd.DataFrame(columns=["variant", "occurred_at", "revenue", "impressions", "conversions"])
    df = pd.concat(frames, ignore_index=True)
    df["occurred_at"] = pd.to_datetime(df["occurred_at"])
    return df


def reconcile(db: Session, experiment_id: int) -> Dict[str, Any]:
    """
    Compare the aggregate counters against the sum of stored events.

    Returns a dict like:
    {
      "experiment_id": 1,
      "balanced": True,
      "arms": {
        "control": {"event_impressions": 10, "counter_impressions": 10, ..., "balanced": True},
        "variant": {...},
      },
    }
    """
    experiment = engine.get_experiment(db, experiment_id)
    df = _events_frame(db, experiment_id)
    totals = df.groupby("variant")[["impressions", "conversions", "revenue"]].sum()

    arms: Dict[str, Dict[str, Any]] = {}
    for arm in ARMS:
        if arm in totals.index:
            ev_imp = int(totals.loc[arm, "impressions"])
            ev_conv = int(totals.loc[arm, "conversions"])
            ev_rev = float(totals.loc[arm, "revenue"])
        else:
            ev_imp, ev_conv, ev_rev = 0, 0, 0.0
        imp, conv, rev = experiment.counters(arm)
        arms[arm] = {
            "event_impressions": ev_imp,
            "counter_impressions": imp,
            "event_conversions": ev_conv,
            "counter_conversions": conv,
            "event_revenue": ev_rev,
            "counter_revenue": rev,
            "balanced": ev_imp == imp and ev_conv == conv and abs(ev_rev - rev) <= 1e-6 * max(1.0, abs(rev)),
        }

    balanced = all(a["balanced"] for a in arms.values())
    if not balanced:
        logger.error("Experiment %s counters do not match its events: %s", experiment_id, arms)
    return {"experiment_id": experiment_id, "balanced": balanced, "arms": arms}


def event_timeseries(db: Session, experiment_id: int, freq: str = "D") -> pd.DataFrame:
    """
    Rebuild per-period, per-arm totals from the raw events, with running
    totals and running RPV. `freq` is any pandas offset alias ("h", "D", "W").
    """
    engine.get_experiment(db, experiment_id)
    df = _events_frame(db, experiment_id)
    if df.empty:
        return pd.DataFrame(columns=TIMESERIES_COLUMNS)

    out = (
        df.groupby([pd.Grouper(key="occurred_at", freq=freq), "variant"])[["impressions", "conversions", "revenue"]]
        .sum()
        .reset_index()
        .rename(columns={"occurred_at": "period"})
        .sort_values(["period", "variant"])
        .reset_index(drop=True)
    )
    running = out.groupby("variant")[["impressions", "revenue"]].cumsum()
    out["cumulative_impressions"] = running["impressions"].astype(int)
    out["cumulative_revenue"] = running["revenue"]
    out["rpv"] = (out["cumulative_revenue"] / out["cumulative_impressions"].where(out["cumulative_impressions"] > 0)).fillna(0.0)
    return out[TIMESERIES_COLUMNS]

import io
import json
import logging
from typing import List

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import assignment, attribution, config, engine, events, models, simulate
from .db import SessionLocal, engine as db_engine
from .errors import ConcurrencyConflict, InvalidState, NotFound
from .schemas import (
    ActivateRequest,
    AllocationOut,
    AssignRequest,
    AssignResponse,
    AttributionOut,
    CancelRequest,
    ConversionBatch,
    ConversionIn,
    DecisionOut,
    ExperimentCreate,
    ExperimentOut,
    ImpressionBatch,
    ImpressionIn,
    IngestOut,
    OrderIn,
    RecomputeOut,
    SimulateOut,
    SimulateRequest,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="splitlens")

# Create DB tables on startup (simple approach, good enough for this project)
models.Base.metadata.create_all(bind=db_engine)


# Dependency that gives a DB session to routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidState)
async def invalid_state_handler(request: Request, exc: InvalidState):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflict)
async def conflict_handler(request: Request, exc: ConcurrencyConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _recompute_out(result: engine.RecomputeResult) -> RecomputeOut:
    return RecomputeOut(
        experiment_id=result.experiment_id,
        allocation=AllocationOut(
            control=result.allocation.control,
            variant=result.allocation.variant,
            exposure=result.allocation.exposure,
        ),
        probability_variant_wins=result.probability_variant_wins,
        mean_rpv_control=result.mean_rpv_control,
        mean_rpv_variant=result.mean_rpv_variant,
        eoc_per_1000=result.eoc_per_1000,
        expected_loss=result.expected_loss,
        safety_budget_remaining=result.safety_budget_remaining,
        should_stop=result.should_stop,
        reasoning=result.reasoning,
        throttled=result.throttled,
        cost_of_waiting_per_1000=result.cost_of_waiting_per_1000,
    )


def _decision_out(decision) -> DecisionOut:
    return DecisionOut(
        promoted=decision.promoted,
        stopped=decision.stopped,
        winner=decision.winner,
        status=decision.status,
        reasoning=decision.reasoning,
        changed=decision.changed,
    )


@app.post("/experiments", response_model=ExperimentOut, status_code=201)
def create_experiment(payload: ExperimentCreate, db: Session = Depends(get_db)):
    return engine.create_experiment(
        db,
        name=payload.name,
        product_id=payload.product_id,
        test_type=payload.test_type,
        confidence_threshold=payload.confidence_threshold,
        min_sample_size=payload.min_sample_size,
        min_samples_per_arm=payload.min_samples_per_arm,
        min_probability_meaningful_lift=payload.min_probability_meaningful_lift,
        max_eoc_per_1000=payload.max_eoc_per_1000,
    )


@app.get("/experiments", response_model=List[ExperimentOut])
def list_experiments(db: Session = Depends(get_db)):
    return engine.list_experiments(db)


@app.get("/experiments/{experiment_id}", response_model=ExperimentOut)
def experiment_detail(experiment_id: int, db: Session = Depends(get_db)):
    return engine.get_experiment(db, experiment_id)


@app.post("/experiments/{experiment_id}/activate", response_model=ExperimentOut)
def activate_experiment(experiment_id: int, payload: ActivateRequest, db: Session = Depends(get_db)):
    return engine.activate(
        db,
        experiment_id,
        conversion_rate=payload.conversion_rate,
        avg_order_value=payload.avg_order_value,
        risk_mode=payload.risk_mode,
        safety_budget=payload.safety_budget,
    )


@app.post("/experiments/{experiment_id}/assign", response_model=AssignResponse)
def assign_visitor(experiment_id: int, payload: AssignRequest, db: Session = Depends(get_db)):
    """
    Sticky assignment. Never fails the page: any problem degrades to control.
    """
    try:
        variant = assignment.assign(db, payload.session_id, experiment_id)
    except (NotFound, InvalidState, ConcurrencyConflict) as err:
        logger.info("Assignment for session %s fell back to control: %s", payload.session_id, err)
        return AssignResponse(
            experiment_id=experiment_id,
            session_id=payload.session_id,
            variant=models.CONTROL,
            assigned=False,
            reason=str(err),
        )
    return AssignResponse(experiment_id=experiment_id, session_id=payload.session_id, variant=variant)


@app.post("/experiments/{experiment_id}/impressions", response_model=IngestOut)
def record_impressions(experiment_id: int, payload: ImpressionBatch, db: Session = Depends(get_db)):
    result = events.record_impressions_bulk(db, experiment_id, [i.model_dump() for i in payload.impressions])
    return IngestOut(**result.counts())


@app.post("/experiments/{experiment_id}/impression", response_model=IngestOut)
def record_impression(experiment_id: int, payload: ImpressionIn, db: Session = Depends(get_db)):
    events.record_impression(db, experiment_id, payload.session_id, payload.variant, payload.occurred_at)
    return IngestOut(impressions=1, conversions=0)


@app.post("/experiments/{experiment_id}/conversions", response_model=IngestOut)
def record_conversions(experiment_id: int, payload: ConversionBatch, db: Session = Depends(get_db)):
    result = events.record_conversions_bulk(db, experiment_id, [c.model_dump() for c in payload.conversions])
    return IngestOut(**result.counts())


@app.post("/experiments/{experiment_id}/conversion", response_model=IngestOut)
def record_conversion(experiment_id: int, payload: ConversionIn, db: Session = Depends(get_db)):
    event = events.record_conversion(
        db,
        experiment_id,
        payload.session_id,
        payload.variant,
        payload.revenue,
        dedup_key=payload.dedup_key,
        occurred_at=payload.occurred_at,
    )
    if event is None:
        return IngestOut(impressions=0, conversions=0, duplicates=1)
    return IngestOut(impressions=0, conversions=1)


@app.post("/experiments/{experiment_id}/backfill")
async def backfill_events(
    experiment_id: int,
    recompute: bool = True,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    """
    Bulk-load raw events from a CSV upload, then recompute once.
    """
    # Basic file type check (not bulletproof, but ok for now)
    if not file.filename.lower().endswith(".csv"):
        return JSONResponse(status_code=400, content={"detail": "Please upload a .csv file."})

    contents = await file.read()
    df = events.load_events_csv(io.BytesIO(contents))
    result = events.ingest_dataframe(db, experiment_id, df)

    body = {"ingested": IngestOut(**result.counts()).model_dump(), "recompute": None}
    if recompute:
        body["recompute"] = _recompute_out(engine.recompute_allocation(db, experiment_id)).model_dump()
    return body


@app.post("/experiments/{experiment_id}/simulate", response_model=SimulateOut)
def simulate_traffic(experiment_id: int, payload: SimulateRequest, db: Session = Depends(get_db)):
    summary = simulate.run_simulation(db, experiment_id, simulate.SimulationConfig(**payload.model_dump()))
    out = SimulateOut(
        visitors=summary.visitors,
        control_impressions=summary.control_impressions,
        variant_impressions=summary.variant_impressions,
        control_conversions=summary.control_conversions,
        variant_conversions=summary.variant_conversions,
        control_revenue=summary.control_revenue,
        variant_revenue=summary.variant_revenue,
    )
    if summary.recompute is not None:
        out.recompute = _recompute_out(summary.recompute)
    return out


@app.post("/experiments/{experiment_id}/recompute", response_model=RecomputeOut)
def recompute_allocation(experiment_id: int, db: Session = Depends(get_db)):
    return _recompute_out(engine.recompute_allocation(db, experiment_id))


@app.post("/experiments/{experiment_id}/evaluate", response_model=DecisionOut)
def evaluate_decision(experiment_id: int, db: Session = Depends(get_db)):
    return _decision_out(engine.evaluate_decision(db, experiment_id))


@app.post("/experiments/{experiment_id}/cancel", response_model=DecisionOut)
def cancel_experiment(experiment_id: int, payload: CancelRequest, db: Session = Depends(get_db)):
    return _decision_out(engine.cancel(db, experiment_id, payload.reason))


@app.get("/experiments/{experiment_id}/reconciliation")
def reconciliation(experiment_id: int, db: Session = Depends(get_db)):
    return events.reconcile(db, experiment_id)


@app.get("/experiments/{experiment_id}/timeseries")
def timeseries(experiment_id: int, freq: str = "D", db: Session = Depends(get_db)):
    df = events.event_timeseries(db, experiment_id, freq=freq)
    return json.loads(df.to_json(orient="records", date_format="iso"))


@app.post("/orders", response_model=AttributionOut)
def attribute_order(payload: OrderIn, db: Session = Depends(get_db)):
    order = attribution.Order(
        session_id=payload.session_id,
        order_id=payload.order_id,
        line_items=[
            attribution.LineItem(product_id=li.product_id, price=li.price, quantity=li.quantity)
            for li in payload.line_items
        ],
    )
    result = attribution.attribute_order(db, order)
    return AttributionOut(
        attributed=result.attributed,
        skipped=result.skipped,
        decisions={k: _decision_out(v) for k, v in result.decisions.items()},
    )

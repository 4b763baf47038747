# splitlens/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Arm = Literal["control", "variant"]
RiskMode = Literal["cautious", "balanced", "aggressive"]


class ExperimentCreate(BaseModel):
    name: str
    product_id: Optional[str] = None
    test_type: str = "price"
    confidence_threshold: float = Field(0.95, gt=0.5, le=1.0)
    min_sample_size: int = Field(100, ge=0)
    # Optional promotion gate
    min_samples_per_arm: Optional[int] = Field(None, ge=0)
    min_probability_meaningful_lift: Optional[float] = Field(None, gt=0, le=1.0)
    max_eoc_per_1000: Optional[float] = Field(None, ge=0)


class ActivateRequest(BaseModel):
    # Estimated baseline conversion rate and average order value (e.g. the price)
    conversion_rate: Optional[float] = Field(None, gt=0, lt=1)
    avg_order_value: Optional[float] = Field(None, gt=0)
    risk_mode: RiskMode = "cautious"
    safety_budget: float = Field(50.0, ge=0)


class ExperimentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    product_id: Optional[str]
    test_type: str
    status: str
    control_allocation: float
    variant_allocation: float
    exposure: float
    variant_share: float
    control_impressions: int
    variant_impressions: int
    control_conversions: int
    variant_conversions: int
    control_revenue: float
    variant_revenue: float
    risk_mode: str
    safety_budget: float
    confidence_threshold: float
    min_sample_size: int
    min_samples_per_arm: Optional[int]
    min_probability_meaningful_lift: Optional[float]
    max_eoc_per_1000: Optional[float]
    promotion_check_count: int
    winner: Optional[str]
    belief_state: Optional[Dict[str, Any]]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    created_at: Optional[datetime]


class AssignRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class AssignResponse(BaseModel):
    experiment_id: int
    session_id: str
    variant: Arm
    # False when the assignment failed and the visitor falls back to control
    assigned: bool = True
    reason: Optional[str] = None


class ImpressionIn(BaseModel):
    session_id: str
    variant: Arm
    occurred_at: Optional[datetime] = None


class ConversionIn(BaseModel):
    session_id: str
    variant: Arm
    revenue: float = Field(..., ge=0, allow_inf_nan=False)
    dedup_key: Optional[str] = None
    occurred_at: Optional[datetime] = None


class ImpressionBatch(BaseModel):
    impressions: List[ImpressionIn]


class ConversionBatch(BaseModel):
    conversions: List[ConversionIn]


class IngestOut(BaseModel):
    impressions: int
    conversions: int
    duplicates: int = 0


class AllocationOut(BaseModel):
    control: float
    variant: float
    exposure: float


class RecomputeOut(BaseModel):
    experiment_id: int
    allocation: AllocationOut
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


class DecisionOut(BaseModel):
    promoted: bool
    stopped: bool
    winner: Optional[Arm] = None
    status: str
    reasoning: str
    changed: bool = False


class CancelRequest(BaseModel):
    reason: str = "Stopped manually."


class LineItemIn(BaseModel):
    product_id: str
    price: float = Field(..., ge=0, allow_inf_nan=False)
    quantity: int = Field(1, ge=1)


class OrderIn(BaseModel):
    order_id: Optional[str] = None
    session_id: str
    line_items: List[LineItemIn] = []


class AttributionOut(BaseModel):
    attributed: List[Dict[str, Any]]
    skipped: List[Dict[str, Any]]
    decisions: Dict[int, DecisionOut]


class SimulateRequest(BaseModel):
    visitors: int = Field(1000, gt=0, le=100_000)
    control_conversion_rate: float = Field(0.03, ge=0, le=1)
    variant_conversion_rate: float = Field(0.035, ge=0, le=1)
    base_price: float = Field(50.0, gt=0)
    seed: int = 42


class SimulateOut(BaseModel):
    visitors: int
    control_impressions: int
    variant_impressions: int
    control_conversions: int
    variant_conversions: int
    control_revenue: float
    variant_revenue: float
    recompute: Optional[RecomputeOut] = None

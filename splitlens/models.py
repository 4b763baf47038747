# splitlens/models.py
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base

STATUS_DRAFT = "draft"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

CONTROL = "control"
VARIANT = "variant"
ARMS = (CONTROL, VARIANT)


def utcnow() -> datetime:
    # Naive UTC, SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Experiment(Base):
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    product_id = Column(String, nullable=True, index=True)
    test_type = Column(String, nullable=False, default="price")
    status = Column(String, nullable=False, default=STATUS_DRAFT, index=True)

    # Current split. Fractions in [0, 1]; during cautious start they do not sum to 1.
    control_allocation = Column(Float, nullable=False, default=0.5)
    variant_allocation = Column(Float, nullable=False, default=0.5)

    control_impressions = Column(Integer, nullable=False, default=0)
    variant_impressions = Column(Integer, nullable=False, default=0)
    control_conversions = Column(Integer, nullable=False, default=0)
    variant_conversions = Column(Integer, nullable=False, default=0)
    control_revenue = Column(Float, nullable=False, default=0.0)
    variant_revenue = Column(Float, nullable=False, default=0.0)

    # Serialized belief.BeliefState
    belief_state = Column(JSON, nullable=True)

    risk_mode = Column(String, nullable=False, default="cautious")
    safety_budget = Column(Float, nullable=False, default=50.0)
    confidence_threshold = Column(Float, nullable=False, default=0.95)
    min_sample_size = Column(Integer, nullable=False, default=100)
    # Optional promotion gate; NULL disables each check
    min_samples_per_arm = Column(Integer, nullable=True)
    min_probability_meaningful_lift = Column(Float, nullable=True)
    max_eoc_per_1000 = Column(Float, nullable=True)
    promotion_check_count = Column(Integer, nullable=False, default=0)
    winner = Column(String, nullable=True)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Optimistic lock: every write to the row bumps this
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # One-to-many: Experiment → assignments / events
    assignments = relationship(
        "SessionAssignment",
        back_populates="experiment",
        cascade="all, delete-orphan",
    )
    impression_events = relationship(
        "ImpressionEvent",
        back_populates="experiment",
        cascade="all, delete-orphan",
    )
    conversion_events = relationship(
        "ConversionEvent",
        back_populates="experiment",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_impressions(self) -> int:
        return (self.control_impressions or 0) + (self.variant_impressions or 0)

    @property
    def exposure(self) -> float:
        """Fraction of traffic that takes part in the experiment at all."""
        return (self.control_allocation or 0.0) + (self.variant_allocation or 0.0)

    @property
    def variant_share(self) -> float:
        """Variant share among exposed traffic."""
        exposure = self.exposure
        if exposure <= 0:
            return 0.0
        return (self.variant_allocation or 0.0) / exposure

    def counters(self, arm: str) -> tuple:
        """(impressions, conversions, revenue) for one arm."""
        if arm == CONTROL:
            return (
                self.control_impressions or 0,
                self.control_conversions or 0,
                self.control_revenue or 0.0,
            )
        return (
            self.variant_impressions or 0,
            self.variant_conversions or 0,
            self.variant_revenue or 0.0,
        )


class SessionAssignment(Base):
    __tablename__ = "session_assignments"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    variant = Column(String, nullable=False)  # "control" | "variant"
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Write-once per (session, experiment)
    __table_args__ = (
        UniqueConstraint("session_id", "experiment_id", name="uq_session_experiment"),
    )

    experiment = relationship("Experiment", back_populates="assignments")

    def is_expired(self, now: datetime = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class ImpressionEvent(Base):
    __tablename__ = "impression_events"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False)
    variant = Column(String, nullable=False)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)

    experiment = relationship("Experiment", back_populates="impression_events")


class ConversionEvent(Base):
    __tablename__ = "conversion_events"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False)
    variant = Column(String, nullable=False)
    revenue = Column(Float, nullable=False)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    # Caller-supplied key (e.g. "order_id:experiment_id"); NULLs never collide
    dedup_key = Column(String, nullable=True, unique=True)

    experiment = relationship("Experiment", back_populates="conversion_events")

"""
Employee Request Portal
Request domain models.

Models:
    - RequestEntity: one row per employee request (travel, claim, visa,
      transport, accommodation); entity_type is the discriminator and
      variant-specific fields live in ``details``
    - ItinerarySegment: travel legs of a TRF (drives flight routing)
    - ApprovalStepRecord: append-only audit of who did what

Status strings are part of the wire contract with the UI and must not be
reworded.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = ("trf", "claims", "visa", "transport", "accommodation")

ENTITY_ID_PREFIXES = {
    "trf": "TRF",
    "claims": "CLM",
    "visa": "VISA",
    "transport": "TSR",
    "accommodation": "ACC",
}

ENTITY_LABELS = {
    "trf": "Travel Request",
    "claims": "Expense Claim",
    "visa": "Visa Application",
    "transport": "Transport Request",
    "accommodation": "Accommodation Request",
}

STATUS_DRAFT = "Draft"
STATUS_PENDING_FOCAL = "Pending Department Focal"
STATUS_PENDING_MANAGER = "Pending Line Manager"
STATUS_PENDING_HOD = "Pending HOD"
STATUS_APPROVED = "Approved"
STATUS_REJECTED = "Rejected"
STATUS_CANCELLED = "Cancelled"
STATUS_COMPLETED = "Completed"
STATUS_PROCESSED = "Processed"

FINAL_STATUSES = frozenset({STATUS_REJECTED, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_PROCESSED})

STEP_ACTIONS = {"Submitted", "Approved", "Rejected", "Delegated", "Cancelled", "Processed"}

SEGMENT_TYPES = {"flight", "road", "rail", "sea", "other"}


class RequestEntity(db.Model):
    """
    Employee request with a multi-stage approval lifecycle.

    current_status is mutated only through WorkflowStateMachine / the
    generic workflow engine.
    """

    __tablename__ = "requests"

    id = db.Column(db.String(40), primary_key=True, comment="Prefixed opaque id, e.g. TRF-20260101-3FA2C1")
    entity_type = db.Column(db.String(20), nullable=False, index=True,
                            comment="trf, claims, visa, transport, accommodation")

    requestor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                             nullable=True, index=True)
    requestor_name = db.Column(db.String(200), nullable=False)
    requestor_email = db.Column(db.String(200), nullable=True)
    staff_id = db.Column(db.String(50), nullable=True)
    department = db.Column(db.String(150), nullable=True, index=True)

    title = db.Column(db.String(300), nullable=False, comment="Purpose / title shown in notifications")
    current_status = db.Column(db.String(60), nullable=False, index=True)

    amount = db.Column(db.Numeric(14, 2), nullable=True)
    currency = db.Column(db.String(10), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    travel_type = db.Column(db.String(60), nullable=True,
                            comment="TRF only: Domestic, Overseas, Home Leave Passage, ...")
    details = db.Column(db.JSON, default=dict, comment="Variant-specific payload")

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    segments = db.relationship(
        "ItinerarySegment", back_populates="request", lazy="dynamic", cascade="all, delete-orphan",
    )
    steps = db.relationship(
        "ApprovalStepRecord", back_populates="request", lazy="dynamic", cascade="all, delete-orphan",
        order_by="ApprovalStepRecord.id",
    )

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "entity_type": self.entity_type,
            "requestor_id": self.requestor_id,
            "requestor_name": self.requestor_name,
            "requestor_email": self.requestor_email,
            "staff_id": self.staff_id,
            "department": self.department,
            "title": self.title,
            "current_status": self.current_status,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "travel_type": self.travel_type,
            "details": self.details or {},
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if self.entity_type == "trf":
            d["segments"] = [s.to_dict() for s in self.segments.all()]
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps.all()]
        return d

    def __repr__(self):
        return f"<RequestEntity {self.id} [{self.current_status}]>"


class ItinerarySegment(db.Model):
    """Single travel leg of a travel request."""

    __tablename__ = "itinerary_segments"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.String(40), db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    segment_type = db.Column(db.String(20), default="flight", comment="flight, road, rail, sea, other")
    origin = db.Column(db.String(150), nullable=True)
    destination = db.Column(db.String(150), nullable=True)
    departure_date = db.Column(db.Date, nullable=True)
    carrier = db.Column(db.String(100), nullable=True)

    request = db.relationship("RequestEntity", back_populates="segments")

    def to_dict(self):
        return {
            "id": self.id,
            "segment_type": self.segment_type,
            "origin": self.origin,
            "destination": self.destination,
            "departure_date": self.departure_date.isoformat() if self.departure_date else None,
            "carrier": self.carrier,
        }


class ApprovalStepRecord(db.Model):
    """
    Immutable record of an action taken on a request.

    Rows are only ever inserted; pending future stages are never stored
    (see entity_status_store.build_timeline).
    """

    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.String(40), db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(100), nullable=False, comment="Role the actor acted as")
    actor_id = db.Column(db.Integer, nullable=True)
    actor_name = db.Column(db.String(200), nullable=False)
    action = db.Column(db.String(20), nullable=False,
                       comment="Submitted, Approved, Rejected, Delegated, Cancelled, Processed")
    from_status = db.Column(db.String(60), nullable=True)
    to_status = db.Column(db.String(60), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    delegated_to = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    request = db.relationship("RequestEntity", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "role": self.role,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "comments": self.comments,
            "delegated_to": self.delegated_to,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApprovalStepRecord {self.entity_id} {self.role}:{self.action}>"

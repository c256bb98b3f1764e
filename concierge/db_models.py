"""
SQLAlchemy models for call results and discovered providers.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, Boolean

from concierge.database import Base


class DBCallResult(Base):
    """
    One normalized call outcome.
    Rows with a call id are unique on it; unplaced calls have no call id.
    """
    __tablename__ = "call_results"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(String(100), unique=True, nullable=True, index=True)
    execution_id = Column(String(100), nullable=True)
    service_request_id = Column(String(100), nullable=True, index=True)
    provider_id = Column(String(100), nullable=True, index=True)

    provider_name = Column(String(255), nullable=False)
    provider_phone = Column(String(50))

    status = Column(String(20), nullable=False)
    backend = Column(String(20), nullable=False)
    ended_reason = Column(String(100))
    duration_minutes = Column(Float, default=0.0)
    cost = Column(Float, nullable=True)
    error = Column(Text, nullable=True)

    transcript = Column(Text)
    summary = Column(Text)
    structured_data = Column(Text)  # JSON string of StructuredCallData

    # Denormalized for quick filtering
    all_criteria_met = Column(Boolean, default=False)
    disqualified = Column(Boolean, default=False)
    earliest_availability = Column(String(255))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DBProvider(Base):
    """Provider found by research, scoped to a service request."""
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String(255), nullable=False, index=True)
    service_request_id = Column(String(100), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    phone = Column(String(50))
    address = Column(String(500))
    rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=True)
    distance_miles = Column(Float, nullable=True)
    place_id = Column(String(255), nullable=True)
    website = Column(String(500))
    source = Column(String(50))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

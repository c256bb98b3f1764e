"""
Service layer for database operations.

The outreach core writes results here for later retrieval; it never reads
from the store and never waits on it. `SqlResultStore` runs the blocking
session work off the event loop and logs failures instead of raising them.
"""

import asyncio
import json
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from concierge.db_models import DBCallResult, DBProvider
from concierge.logging_config import get_logger
from concierge.models import CallResult, Provider

logger = get_logger(__name__)


class CallResultService:
    """Service for persisting call results."""

    @staticmethod
    def save_call_result(db: Session, result: CallResult) -> DBCallResult:
        """Insert a result, or update the existing row with the same call id."""
        row = None
        if result.call_id:
            row = db.query(DBCallResult).filter(DBCallResult.call_id == result.call_id).first()
        if row is None:
            row = DBCallResult(call_id=result.call_id or None)
            db.add(row)

        data = result.structured
        row.execution_id = result.execution_id
        row.service_request_id = result.service_request_id
        row.provider_id = result.provider_id
        row.provider_name = result.provider.name
        row.provider_phone = result.provider.phone
        row.status = result.status.value
        row.backend = result.backend.value
        row.ended_reason = result.ended_reason
        row.duration_minutes = result.duration
        row.cost = result.cost
        row.error = result.error
        row.transcript = result.transcript
        row.summary = result.analysis.summary
        row.structured_data = json.dumps(data.model_dump(mode="json"))
        row.all_criteria_met = data.all_criteria_met
        row.disqualified = data.disqualified
        row.earliest_availability = data.earliest_availability
        row.updated_at = datetime.utcnow()

        db.commit()
        db.refresh(row)
        logger.info("call_result_saved", call_id=result.call_id, status=result.status.value)
        return row

    @staticmethod
    def get_by_call_id(db: Session, call_id: str) -> Optional[DBCallResult]:
        return db.query(DBCallResult).filter(DBCallResult.call_id == call_id).first()

    @staticmethod
    def list_for_request(db: Session, service_request_id: str) -> List[DBCallResult]:
        return (
            db.query(DBCallResult)
            .filter(DBCallResult.service_request_id == service_request_id)
            .order_by(DBCallResult.id)
            .all()
        )


class ProviderService:
    """Service for persisting research results."""

    @staticmethod
    def save_providers(
        db: Session, providers: Sequence[Provider], service_request_id: Optional[str] = None
    ) -> List[DBProvider]:
        rows = []
        for provider in providers:
            row = (
                db.query(DBProvider)
                .filter(
                    DBProvider.external_id == provider.id,
                    DBProvider.service_request_id == service_request_id,
                )
                .first()
            )
            if row is None:
                row = DBProvider(external_id=provider.id, service_request_id=service_request_id)
                db.add(row)
            row.name = provider.name
            row.phone = provider.phone
            row.address = provider.address
            row.rating = provider.rating
            row.review_count = provider.review_count
            row.distance_miles = provider.distance
            row.place_id = provider.place_id
            row.website = provider.website
            row.source = provider.source
            rows.append(row)

        db.commit()
        logger.info("providers_saved", count=len(rows), service_request_id=service_request_id)
        return rows

    @staticmethod
    def list_for_request(db: Session, service_request_id: str) -> List[DBProvider]:
        return (
            db.query(DBProvider)
            .filter(DBProvider.service_request_id == service_request_id)
            .order_by(DBProvider.id)
            .all()
        )


class SqlResultStore:
    """Async, failure-tolerant writer used by the outreach services."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _save_results(self, results: Sequence[CallResult]) -> int:
        db = self.session_factory()
        try:
            for result in results:
                CallResultService.save_call_result(db, result)
            return len(results)
        finally:
            db.close()

    def _save_providers(self, providers: Sequence[Provider], service_request_id: Optional[str]) -> int:
        db = self.session_factory()
        try:
            return len(ProviderService.save_providers(db, providers, service_request_id))
        finally:
            db.close()

    async def save_results(self, results: Sequence[CallResult]) -> int:
        """Persist results; returns the number written (0 on failure)."""
        try:
            return await asyncio.to_thread(self._save_results, list(results))
        except SQLAlchemyError as e:
            logger.error("call_results_persist_failed", count=len(results), error=str(e))
            return 0

    async def save_providers(self, providers: Sequence[Provider], service_request_id: Optional[str] = None) -> int:
        try:
            return await asyncio.to_thread(self._save_providers, list(providers), service_request_id)
        except SQLAlchemyError as e:
            logger.error("providers_persist_failed", count=len(providers), error=str(e))
            return 0

"""
XP Ledger

Every XP change is an immutable event; the learner's total_xp is a cache of
the sum of those events, updated in the same transaction as the insert.
"""
from collections import defaultdict
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
import logging
import uuid

from progression.dynamo import ensure_aware, utcnow
from progression.exceptions import (
    ConcurrentModification,
    HeartsUnavailable,
    InvalidInput,
    StorageUnavailable,
)
from progression.schemas import XP_SOURCES, XPEvent, XPSourceTotal, XPSummary
from progression.services.learner_repository import LearnerRepository
from progression.services.xp_repository import XPRepository

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 500


def _require_id(name: str, value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{name} is required")
    if '#' in value:
        raise InvalidInput(f"{name} cannot contain '#': {value}")
    return value


class XPLedger:
    """Append and read XP events"""

    def __init__(self, learners: LearnerRepository, events: XPRepository):
        self.learners = learners
        self.events = events

    def append_xp(
        self,
        learner_id: str,
        amount: int,
        source: str,
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> XPEvent:
        """
        Record an XP event and increment the learner's total in one atomic write.

        Args:
            learner_id: Learner receiving (or spending) XP
            amount: Signed, non-zero amount
            source: One of XP_SOURCES
            source_id: Exercise / achievement / purchase reference
            description: Free text for history display
            idempotency_key: Client dedup key; becomes the event id, so a
                retried call returns the original event and applies nothing

        Returns:
            The recorded XPEvent (or the original one on a retried key)

        Raises:
            InvalidInput: bad identifiers, zero amount, unknown source
            LearnerNotFound: learner does not exist
            StorageUnavailable: the atomic write failed
        """
        event, _created = self.append_xp_with_status(
            learner_id, amount, source, source_id, description, idempotency_key, now
        )
        return event

    def append_xp_with_status(
        self,
        learner_id: str,
        amount: int,
        source: str,
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[XPEvent, bool]:
        """Same as append_xp, also telling whether this call wrote the event"""
        event = self._build_event(learner_id, amount, source, source_id, description, idempotency_key, now)

        if self.events.append(event):
            logger.info(f"XP event {event.id}: {amount:+d} XP ({source}) for learner {learner_id}")
            return event, True

        return self._resolve_cancelled(event), False

    def append_xp_with_items(
        self,
        learner_id: str,
        amount: int,
        source: str,
        items: List[Dict[str, Any]],
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[XPEvent, bool]:
        """
        Record an XP event together with new rows (e.g. an achievement unlock).

        The rows, the event and the total increment commit together or not at
        all. A cancelled transaction is reported as (event, False) and left to
        the caller to resolve: any of the rows may already exist.
        """
        event = self._build_event(learner_id, amount, source, source_id, description, idempotency_key, now)

        if self.events.append(event, extra_items=items):
            logger.info(f"XP event {event.id}: {amount:+d} XP ({source}) for learner {learner_id}")
            return event, True
        return event, False

    def append_purchase(
        self,
        learner_id: str,
        cost: int,
        hearts: int,
        heart_clock: Optional[datetime],
        expected_hearts: int,
        expected_clock: Optional[datetime],
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> XPEvent:
        """
        Spend `cost` XP and set hearts in the same transaction.

        Raises:
            HeartsUnavailable: total_xp is below `cost`
            ConcurrentModification: hearts changed since they were read
        """
        if cost <= 0:
            raise InvalidInput(f"cost must be positive, got: {cost}")

        event = self._build_event(learner_id, -cost, "purchase", "hearts", description, None, now)
        written = self.events.append(
            event,
            hearts=hearts,
            heart_clock=heart_clock,
            expected_hearts=expected_hearts,
            expected_clock=expected_clock,
            min_balance=cost,
        )
        if written:
            logger.info(f"Learner {learner_id} spent {cost} XP on hearts (now {hearts})")
            return event

        learner = self.learners.get_learner(learner_id)
        if learner.total_xp < cost:
            raise HeartsUnavailable(f"Not enough XP: {cost} required, {learner.total_xp} available")
        raise ConcurrentModification(f"Hearts of learner {learner_id} changed during purchase")

    def _build_event(
        self,
        learner_id: str,
        amount: int,
        source: str,
        source_id: Optional[str],
        description: Optional[str],
        idempotency_key: Optional[str],
        now: Optional[datetime]
    ) -> XPEvent:
        _require_id("learner_id", learner_id)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidInput(f"amount must be an integer, got: {amount!r}")
        if amount == 0:
            raise InvalidInput("amount cannot be zero")
        if source not in XP_SOURCES:
            raise InvalidInput(f"source must be one of {XP_SOURCES}, got: {source}")
        if idempotency_key is not None:
            _require_id("idempotency_key", idempotency_key)

        return XPEvent(
            id=idempotency_key or str(uuid.uuid4()),
            learner_id=learner_id,
            amount=amount,
            source=source,
            source_id=source_id,
            description=description,
            created_at=ensure_aware(now) if now else utcnow(),
        )

    def _resolve_cancelled(self, event: XPEvent) -> XPEvent:
        """Work out why the transaction was cancelled"""
        existing = self.events.get_event(event.learner_id, event.id)
        if existing is not None:
            if existing.amount != event.amount or existing.source != event.source:
                raise InvalidInput(f"idempotency_key {event.id} was already used for a different XP event")
            logger.warning(f"XP event {event.id} already recorded, returning original")
            return existing

        # Raises LearnerNotFound when that is the reason
        self.learners.get_learner(event.learner_id)
        raise StorageUnavailable(f"XP transaction for learner {event.learner_id} was cancelled")

    def get_history(self, learner_id: str, limit: int = 50, source: Optional[str] = None) -> List[XPEvent]:
        """Newest first, optionally filtered by source"""
        _require_id("learner_id", learner_id)
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {MAX_HISTORY_LIMIT}, got: {limit}")
        if source is not None and source not in XP_SOURCES:
            raise InvalidInput(f"source must be one of {XP_SOURCES}, got: {source}")

        events = self.events.list_events(learner_id)
        if source is not None:
            events = [event for event in events if event.source == source]
        return events[:limit]

    def summarize(self, learner_id: str) -> XPSummary:
        """
        Reconcile the cached total with the event log.

        `consistent` is False only if the two ever diverged, which the
        transactional append is meant to rule out.
        """
        learner = self.learners.get_learner(learner_id)
        events = self.events.list_events(learner_id)

        totals = defaultdict(int)
        counts = defaultdict(int)
        for event in events:
            totals[event.source] += event.amount
            counts[event.source] += 1

        summary = XPSummary(
            learner_id=learner_id,
            cached_total=learner.total_xp,
            calculated_total=sum(totals.values()),
            by_source=[
                XPSourceTotal(source=source, total_xp=totals[source], count=counts[source])
                for source in sorted(totals)
            ],
        )
        if not summary.consistent:
            logger.warning(
                f"XP total mismatch for learner {learner_id}: cached={summary.cached_total}, "
                f"calculated={summary.calculated_total}"
            )
        return summary

"""
Append-only event store for calculation events.

``EventStore`` wraps ``CalculationEventRepository`` with the log's rules:

  - Events are only ever appended; nothing here updates or deletes.
  - A ``SCORES_COMPUTED`` event is rejected unless an ``INPUTS_CAPTURED``
    event already exists for the same correlation id, so every stored
    score can be replayed from captured inputs.
  - Persistence errors propagate. Losing an audit record is something the
    caller must see.

The store is constructed per connection and passed to the services that
emit events; there is no module-level instance.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from portfolio_scorer.db.connection import atomic
from portfolio_scorer.db.repositories.event_repo import CalculationEventRepository
from portfolio_scorer.errors import EventOrderingError
from portfolio_scorer.models.events import CalculationEvent, EventType

logger = logging.getLogger(__name__)


class EventStore:
    """Append and query the calculation event log.

    Args:
        conn: Open SQLite connection; the caller owns commit/rollback.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.repo = CalculationEventRepository(conn)

    def append(self, user_id: str, event: CalculationEvent) -> int:
        """Persist one event and return its id.

        Args:
            user_id: Owner of the event; overrides ``event.user_id``.
            event: Unsaved event (``id`` and ``created_at`` are ignored).

        Returns:
            The new event id.

        Raises:
            EventOrderingError: ``SCORES_COMPUTED`` without prior ``INPUTS_CAPTURED``.
            sqlite3.Error: If the insert fails.
        """
        if event.user_id != user_id:
            event = event.model_copy(update={"user_id": user_id})
        self._check_order(event)
        event_id = self.repo.insert(event.model_copy(update={"id": None, "created_at": None}))
        logger.debug(
            "Appended %s | correlation_id=%s | user_id=%s | id=%d",
            event.event_type.value, event.correlation_id, user_id, event_id,
        )
        return event_id

    def append_batch(self, events: list[CalculationEvent]) -> list[int]:
        """Append several events atomically, in list order."""
        with atomic(self.conn):
            return [self.append(e.user_id, e) for e in events]

    def get_by_correlation_id(self, correlation_id: str) -> list[CalculationEvent]:
        return self.repo.get_by_correlation_id(correlation_id)

    def get_by_user_id(self, user_id: str, limit: int = 100) -> list[CalculationEvent]:
        return self.repo.get_by_user_id(user_id, limit=limit)

    def get_by_event_type(
        self,
        user_id: str,
        event_type: EventType,
        limit: int = 100,
    ) -> list[CalculationEvent]:
        return self.repo.get_by_event_type(user_id, event_type, limit=limit)

    def get_calc_started_event(self, correlation_id: str) -> Optional[CalculationEvent]:
        return self.repo.get_first_of_type(correlation_id, EventType.CALC_STARTED)

    def _check_order(self, event: CalculationEvent) -> None:
        if event.event_type is not EventType.SCORES_COMPUTED:
            return
        captured = self.repo.get_first_of_type(event.correlation_id, EventType.INPUTS_CAPTURED)
        if captured is None:
            raise EventOrderingError(
                f"SCORES_COMPUTED for correlation ID {event.correlation_id} "
                "has no preceding INPUTS_CAPTURED event."
            )

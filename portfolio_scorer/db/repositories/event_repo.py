"""
Repository for the append-only ``calculation_events`` table.

There are deliberately no update or delete methods.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.events import CalculationEvent, EventType
from portfolio_scorer.utils.time_utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class CalculationEventRepository(BaseRepository):
    """Insert and query calculation events."""

    def insert(self, event: CalculationEvent) -> int:
        """Insert one event and return its ``id``.

        ``created_at`` defaults to now (UTC, microsecond resolution) so
        events of one correlation id sort in append order.
        """
        created_at = event.created_at or utcnow()
        self.execute(
            """
            INSERT INTO calculation_events (
                correlation_id, user_id, event_type, payload, created_at
            ) VALUES (?, ?, ?, ?, ?);
            """,
            (
                event.correlation_id,
                event.user_id,
                event.event_type.value,
                _dumps(event.payload),
                to_iso(created_at),
            ),
        )
        return self.last_insert_rowid()

    def get_by_id(self, event_id: int) -> Optional[CalculationEvent]:
        row = self.fetchone("SELECT * FROM calculation_events WHERE id = ?;", (event_id,))
        return _row_to_event(row) if row else None

    def get_by_correlation_id(self, correlation_id: str) -> list[CalculationEvent]:
        """All events for ``correlation_id``, oldest first."""
        rows = self.fetchall(
            """
            SELECT * FROM calculation_events
            WHERE correlation_id = ?
            ORDER BY created_at ASC, id ASC;
            """,
            (correlation_id,),
        )
        return [_row_to_event(r) for r in rows]

    def get_by_user_id(self, user_id: str, limit: int = 100) -> list[CalculationEvent]:
        """Most recent events for ``user_id``, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM calculation_events
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?;
            """,
            (user_id, limit),
        )
        return [_row_to_event(r) for r in rows]

    def get_by_event_type(
        self,
        user_id: str,
        event_type: EventType,
        limit: int = 100,
    ) -> list[CalculationEvent]:
        """Most recent events of one type for ``user_id``, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM calculation_events
            WHERE user_id = ? AND event_type = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?;
            """,
            (user_id, event_type.value, limit),
        )
        return [_row_to_event(r) for r in rows]

    def get_first_of_type(
        self,
        correlation_id: str,
        event_type: EventType,
    ) -> Optional[CalculationEvent]:
        row = self.fetchone(
            """
            SELECT * FROM calculation_events
            WHERE correlation_id = ? AND event_type = ?
            ORDER BY created_at ASC, id ASC
            LIMIT 1;
            """,
            (correlation_id, event_type.value),
        )
        return _row_to_event(row) if row else None

    def get_recent_correlation_ids(self, user_id: str, limit: int = 10) -> list[str]:
        """Correlation ids of the user's latest completed score calculations."""
        rows = self.fetchall(
            """
            SELECT correlation_id, MAX(created_at) AS last_at
            FROM calculation_events
            WHERE user_id = ? AND event_type = ?
            GROUP BY correlation_id
            ORDER BY last_at DESC
            LIMIT ?;
            """,
            (user_id, EventType.SCORES_COMPUTED.value, limit),
        )
        return [r["correlation_id"] for r in rows]


# ── Row mapper ────────────────────────────────────────────────────────────────

def _row_to_event(row: sqlite3.Row) -> CalculationEvent:
    return CalculationEvent(
        id=row["id"],
        correlation_id=row["correlation_id"],
        user_id=row["user_id"],
        event_type=EventType(row["event_type"]),
        payload=_loads(row["payload"], {}),
        created_at=parse_iso(row["created_at"]),
    )

"""
Repository for ``alerts`` and ``alert_preferences``.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from portfolio_scorer.db.repositories.base import BaseRepository, _dumps, _loads
from portfolio_scorer.models.alert import Alert, AlertPreferences, AlertSeverity, AlertType
from portfolio_scorer.utils.time_utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


class AlertRepository(BaseRepository):
    """CRUD over alerts, always scoped to one user."""

    def insert(self, alert: Alert) -> int:
        now = to_iso(utcnow())
        self.execute(
            """
            INSERT INTO alerts (
                user_id, type, severity, subject_key, title, message, metadata,
                is_read, is_dismissed, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?);
            """,
            (
                alert.user_id,
                alert.type.value,
                alert.severity.value,
                alert.subject_key,
                alert.title,
                alert.message,
                _dumps(alert.metadata),
                now,
                now,
            ),
        )
        return self.last_insert_rowid()

    def update_content(
        self,
        alert_id: int,
        title: str,
        message: str,
        severity: AlertSeverity,
        metadata: dict[str, Any],
    ) -> None:
        """Refresh an alert's text and metadata; it becomes unread again."""
        self.execute(
            """
            UPDATE alerts
            SET title = ?, message = ?, severity = ?, metadata = ?,
                is_read = 0, updated_at = ?
            WHERE id = ?;
            """,
            (title, message, severity.value, _dumps(metadata), to_iso(utcnow()), alert_id),
        )

    def find_active(self, user_id: str, alert_type: AlertType, subject_key: str) -> Optional[Alert]:
        """The non-dismissed alert for a subject, if any."""
        row = self.fetchone(
            """
            SELECT * FROM alerts
            WHERE user_id = ? AND type = ? AND subject_key = ? AND is_dismissed = 0
            LIMIT 1;
            """,
            (user_id, alert_type.value, subject_key),
        )
        return _row_to_alert(row) if row else None

    def find_active_by_metadata(
        self,
        user_id: str,
        alert_type: AlertType,
        key: str,
        value: str,
    ) -> list[Alert]:
        rows = self.fetchall(
            """
            SELECT * FROM alerts
            WHERE user_id = ? AND type = ? AND is_dismissed = 0
              AND json_extract(metadata, '$.' || ?) = ?
            ORDER BY id;
            """,
            (user_id, alert_type.value, key, value),
        )
        return [_row_to_alert(r) for r in rows]

    def get(self, user_id: str, alert_id: int) -> Optional[Alert]:
        row = self.fetchone(
            "SELECT * FROM alerts WHERE id = ? AND user_id = ?;", (alert_id, user_id)
        )
        return _row_to_alert(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        limit: int,
        offset: int,
        unread_only: bool = False,
        alert_type: Optional[AlertType] = None,
        include_dismissed: bool = False,
    ) -> tuple[list[Alert], int]:
        """One page of alerts (newest first) plus the total matching count."""
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        if not include_dismissed:
            where.append("is_dismissed = 0")
        if unread_only:
            where.append("is_read = 0")
        if alert_type is not None:
            where.append("type = ?")
            params.append(alert_type.value)
        clause = " AND ".join(where)

        total_row = self.fetchone(f"SELECT COUNT(*) AS n FROM alerts WHERE {clause};", tuple(params))
        rows = self.fetchall(
            f"""
            SELECT * FROM alerts WHERE {clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?;
            """,
            tuple(params + [limit, offset]),
        )
        return [_row_to_alert(r) for r in rows], int(total_row["n"]) if total_row else 0

    def count_unread(self, user_id: str) -> int:
        row = self.fetchone(
            """
            SELECT COUNT(*) AS n FROM alerts
            WHERE user_id = ? AND is_read = 0 AND is_dismissed = 0;
            """,
            (user_id,),
        )
        return int(row["n"]) if row else 0

    def mark_read(self, user_id: str, alert_id: int) -> bool:
        cur = self.execute(
            "UPDATE alerts SET is_read = 1, updated_at = ? WHERE id = ? AND user_id = ?;",
            (to_iso(utcnow()), alert_id, user_id),
        )
        return cur.rowcount > 0

    def dismiss(self, user_id: str, alert_id: int, when: Optional[datetime] = None) -> bool:
        ts = to_iso(when or utcnow())
        cur = self.execute(
            """
            UPDATE alerts SET is_dismissed = 1, dismissed_at = ?, updated_at = ?
            WHERE id = ? AND user_id = ? AND is_dismissed = 0;
            """,
            (ts, ts, alert_id, user_id),
        )
        return cur.rowcount > 0

    def dismiss_all(self, user_id: str, alert_type: Optional[AlertType] = None) -> int:
        ts = to_iso(utcnow())
        sql = """
            UPDATE alerts SET is_dismissed = 1, dismissed_at = ?, updated_at = ?
            WHERE user_id = ? AND is_dismissed = 0
        """
        params: list[Any] = [ts, ts, user_id]
        if alert_type is not None:
            sql += " AND type = ?"
            params.append(alert_type.value)
        return self.execute(sql + ";", tuple(params)).rowcount

    # ── Preferences ───────────────────────────────────────────────────────────

    def get_preferences(self, user_id: str) -> Optional[AlertPreferences]:
        row = self.fetchone("SELECT * FROM alert_preferences WHERE user_id = ?;", (user_id,))
        if row is None:
            return None
        return AlertPreferences(
            user_id=row["user_id"],
            opportunity_alerts_enabled=bool(row["opportunity_alerts_enabled"]),
            drift_alerts_enabled=bool(row["drift_alerts_enabled"]),
            drift_threshold=row["drift_threshold"],
            alert_frequency=row["alert_frequency"],
            email_notifications=bool(row["email_notifications"]),
        )

    def upsert_preferences(self, prefs: AlertPreferences) -> None:
        self.execute(
            """
            INSERT INTO alert_preferences (
                user_id, opportunity_alerts_enabled, drift_alerts_enabled,
                drift_threshold, alert_frequency, email_notifications, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                opportunity_alerts_enabled = excluded.opportunity_alerts_enabled,
                drift_alerts_enabled       = excluded.drift_alerts_enabled,
                drift_threshold            = excluded.drift_threshold,
                alert_frequency            = excluded.alert_frequency,
                email_notifications        = excluded.email_notifications,
                updated_at                 = excluded.updated_at;
            """,
            (
                prefs.user_id,
                int(prefs.opportunity_alerts_enabled),
                int(prefs.drift_alerts_enabled),
                prefs.drift_threshold,
                prefs.alert_frequency,
                int(prefs.email_notifications),
                to_iso(utcnow()),
            ),
        )


# ── Row mapper ────────────────────────────────────────────────────────────────

def _row_to_alert(row: sqlite3.Row) -> Alert:
    return Alert(
        id=row["id"],
        user_id=row["user_id"],
        type=AlertType(row["type"]),
        severity=AlertSeverity(row["severity"]),
        subject_key=row["subject_key"],
        title=row["title"],
        message=row["message"],
        metadata=_loads(row["metadata"], {}),
        is_read=bool(row["is_read"]),
        is_dismissed=bool(row["is_dismissed"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
        dismissed_at=parse_iso(row["dismissed_at"]),
    )

"""Notification history repository: the persisted audit trail of notifications and bundles."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import select, func
from sqlalchemy import delete
from sqlalchemy.engine import Engine

from geonotify.db.config import store_session
from geonotify.models.notification import NotificationHistory
from geonotify.schemas.notifications import Notification, NotificationBundle

TERMINAL_STATUSES = ("delivered", "failed", "cancelled", "expired")


class NotificationHistoryRepository:
    """Reads and writes NotificationHistory rows."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def record_notification(self, notification: Notification, now: datetime, status: str = "pending") -> None:
        """Insert or refresh the history row of a notification."""
        with store_session(self.engine) as session:
            row = session.exec(
                select(NotificationHistory).where(NotificationHistory.notification_id == notification.id)
            ).first()
            if row is None:
                row = NotificationHistory(
                    notification_id=notification.id,
                    user_id=notification.user_id,
                    task_id=notification.task_id,
                    kind="notification",
                    notification_type=notification.type,
                    title=notification.title,
                    body=notification.body,
                    payload=notification.model_dump(mode="json"),
                    scheduled_time=notification.scheduled_time,
                    created_at=now,
                )
            row.status = status
            row.bundle_id = None
            row.cancel_reason = None
            row.updated_at = now
            session.add(row)
            session.commit()

    def record_bundle(self, bundle: NotificationBundle, now: datetime) -> None:
        """Insert the bundle row and point member rows at it."""
        member_ids = [n.id for n in bundle.notifications]
        with store_session(self.engine) as session:
            session.add(NotificationHistory(
                notification_id=bundle.id,
                user_id=bundle.user_id,
                task_id=None,
                kind="bundle",
                title=bundle.title,
                body=bundle.body,
                payload=bundle.model_dump(mode="json"),
                scheduled_time=bundle.scheduled_time,
                status="pending",
                created_at=now,
                updated_at=now,
            ))
            members = session.exec(
                select(NotificationHistory).where(NotificationHistory.notification_id.in_(member_ids))
            ).all()
            for row in members:
                row.status = "bundled"
                row.bundle_id = bundle.id
                row.updated_at = now
                session.add(row)
            session.commit()

    def update_status(
        self,
        notification_ids: List[str],
        status: str,
        now: datetime,
        **fields: Any,
    ) -> int:
        """
        Move history rows to `status`, copying any extra column values.

        Args:
            notification_ids: Notification or bundle ids
            status: New history status
            now: Update timestamp
            **fields: Extra columns (delivery_attempts, error, delivered_time, cancel_reason)

        Returns:
            Number of rows updated
        """
        if not notification_ids:
            return 0
        with store_session(self.engine) as session:
            rows = session.exec(
                select(NotificationHistory).where(NotificationHistory.notification_id.in_(notification_ids))
            ).all()
            for row in rows:
                row.status = status
                row.updated_at = now
                for key, value in fields.items():
                    setattr(row, key, value)
                session.add(row)
            session.commit()
            return len(rows)

    def get(self, notification_id: str, user_id: Optional[str] = None) -> Optional[NotificationHistory]:
        with store_session(self.engine) as session:
            statement = select(NotificationHistory).where(NotificationHistory.notification_id == notification_id)
            if user_id is not None:
                statement = statement.where(NotificationHistory.user_id == user_id)
            return session.exec(statement).first()

    def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        task_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[NotificationHistory]:
        with store_session(self.engine) as session:
            statement = select(NotificationHistory).where(NotificationHistory.user_id == user_id)
            if status is not None:
                statement = statement.where(NotificationHistory.status == status)
            if task_id is not None:
                statement = statement.where(NotificationHistory.task_id == task_id)
            statement = statement.order_by(NotificationHistory.created_at.desc()).limit(limit)
            return list(session.exec(statement).all())

    def counts_by_status(self, user_id: str, since: Optional[datetime] = None) -> Dict[str, int]:
        """Per-status counts of individual notifications (bundle rows excluded)."""
        with store_session(self.engine) as session:
            statement = (
                select(NotificationHistory.status, func.count())
                .where(NotificationHistory.user_id == user_id)
                .where(NotificationHistory.kind == "notification")
            )
            if since is not None:
                statement = statement.where(NotificationHistory.created_at >= since)
            statement = statement.group_by(NotificationHistory.status)
            return {status: count for status, count in session.exec(statement).all()}

    def purge_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal rows last touched before `cutoff`."""
        with store_session(self.engine) as session:
            result = session.exec(
                delete(NotificationHistory)
                .where(NotificationHistory.status.in_(TERMINAL_STATUSES))
                .where(NotificationHistory.updated_at < cutoff)
            )
            session.commit()
            return result.rowcount or 0

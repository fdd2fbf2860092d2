"""Notification sink: persist the row, then push it over Redis pub/sub.

The sink may fail independently of whoever emits into it; callers wrap
emission in try/except and log. Stored notifications are read back per user,
marked read, and read ones are swept after the retention period.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import timedelta
from enum import StrEnum
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sportxp.config import get_settings
from sportxp.db.models import Notification
from sportxp.exceptions import DependencyFailureError
from sportxp.progression.time_utils import utcnow

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    BADGE_UNLOCKED = "badge_unlocked"
    LEVEL_UP = "level_up"
    CHALLENGE_COMPLETED = "challenge_completed"
    XP_EARNED = "xp_earned"
    STREAK_UPDATED = "streak_updated"


class NotificationSink(Protocol):
    async def __call__(
        self,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


def user_channel(user_id: int) -> str:
    return f"notifications:user:{user_id}"


async def push_notification_to_user(redis: object | None, notification: Notification) -> None:
    """Publish a formatted notification dict to notifications:user:{user_id}.

    The notification must already be flushed (have an ``id``).
    """
    if redis is None:
        return

    payload = {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "kind": notification.kind,
            "title": notification.title,
            "message": notification.message,
            "metadata": notification.notification_metadata,
            "timestamp": notification.created_at.isoformat() if notification.created_at else None,
            "read": False,
        },
    }
    try:
        await redis.publish(  # type: ignore[union-attr]
            user_channel(notification.user_id),
            json.dumps(payload, default=str),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via %s",
            user_channel(notification.user_id),
            exc_info=True,
        )


async def emit_notification(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    kind: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    """Persist and push a notification. Commits its own row."""
    notification = Notification(
        user_id=user_id,
        kind=str(kind),
        title=title,
        message=message,
        notification_metadata=metadata or {},
        read=False,
        created_at=utcnow(),
    )
    db.add(notification)
    await db.commit()

    await push_notification_to_user(redis, notification)
    return notification


def database_sink(db: AsyncSession, redis: object | None) -> NotificationSink:
    """Bind emit_notification to a session/redis pair.

    Storage failures surface as DependencyFailureError.
    """

    async def _sink(
        user_id: int,
        kind: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await emit_notification(db, redis, user_id, kind, title, message, metadata)
        except SQLAlchemyError as exc:
            raise DependencyFailureError(
                f"Failed to store {kind} notification",
                user_id=user_id,
                operation="notify",
                context={"kind": str(kind)},
            ) from exc

    return _sink


def _notification_to_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "kind": notification.kind,
        "title": notification.title,
        "message": notification.message,
        "metadata": notification.notification_metadata or {},
        "read": notification.read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


async def get_user_notifications(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    kinds: list[str] | None = None,
) -> dict[str, Any]:
    """User's notifications, most recent first, with the unread count."""
    page = max(page, 1)
    limit = max(1, min(limit, 100))

    filters = [Notification.user_id == user_id]
    if unread_only:
        filters.append(Notification.read.is_(False))
    if kinds:
        filters.append(Notification.kind.in_([str(k) for k in kinds]))

    total = await db.scalar(select(func.count()).select_from(Notification).where(*filters)) or 0
    unread_count = await get_unread_count(db, user_id)

    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "notifications": [_notification_to_dict(n) for n in result.scalars()],
        "total": total,
        "unread_count": unread_count,
        "page": page,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


async def get_unread_count(db: AsyncSession, user_id: int) -> int:
    count = await db.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
    )
    return int(count or 0)


async def mark_as_read(db: AsyncSession, user_id: int, notification_id: int) -> bool:
    """Mark one of the user's notifications as read. Returns True if found."""
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount > 0


async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
    """Mark every unread notification of the user as read. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def delete_old_notifications(db: AsyncSession, days_old: int | None = None) -> int:
    """Delete read notifications older than ``days_old`` days. Unread ones are kept."""
    if days_old is None:
        days_old = get_settings().notification_retention_days
    cutoff = utcnow() - timedelta(days=days_old)

    result = await db.execute(
        delete(Notification)
        .where(Notification.read.is_(True), Notification.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Deleted %d read notifications older than %d days", result.rowcount, days_old)
    return result.rowcount

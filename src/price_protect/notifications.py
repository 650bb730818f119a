"""User-visible notices, persisted alongside the records they describe."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from price_protect.models import Notification

if TYPE_CHECKING:
    from uuid import UUID

    from price_protect.models import NotificationKind
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)


def notify(
    repository: Repository,
    user_id: UUID,
    kind: NotificationKind,
    title: str,
    message: str,
    **data: Any,
) -> Notification:
    """Record a notification for the user.

    A notice that cannot be stored is logged and dropped; the work it
    describes has already happened.
    """
    notification = Notification(
        user_id=user_id, kind=kind, title=title, message=message, data=data
    )
    try:
        repository.add_notification(notification)
    except Exception:
        logger.warning("Could not store notification for %s: %s", user_id, title, exc_info=True)
        return notification
    logger.info("Notified user %s: %s", user_id, title)
    return notification

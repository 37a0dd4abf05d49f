"""User-facing notifications (toasts in the dashboard).

NotificationService writes notification rows through the repository. A
failure to notify is logged and never fails the operation that triggered it.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.app.platform.schemas import NotificationCreate, NotificationRead

logger = structlog.get_logger(__name__)


class NotificationService:
    """Creates success and error notifications for a user.

    Args:
        repository: NotificationRepository (or any object with ``create``).
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def create(
        self, user_id: str, type: str, title: str, message: str
    ) -> NotificationRead | None:
        try:
            return await self._repository.create(
                NotificationCreate(user_id=user_id, type=type, title=title, message=message)
            )
        except SQLAlchemyError:
            logger.error(
                "notifications.create_failed",
                user_id=user_id,
                title=title,
                exc_info=True,
            )
            return None

    async def success(self, user_id: str, title: str, message: str) -> NotificationRead | None:
        return await self.create(user_id, "success", title, message)

    async def integration_error(
        self, user_id: str, integration_name: str, error_message: str
    ) -> NotificationRead | None:
        """Notify that an integration failed, naming it and the raw error."""
        return await self.create(
            user_id,
            "error",
            f"{integration_name} integration error",
            error_message,
        )

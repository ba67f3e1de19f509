"""
Email notifications via the arq queue.

The identity core never sends mail itself. It enqueues a job and moves on:
if enqueueing fails the primary operation still succeeds and the failure is
logged as a warning.
"""

from typing import Any

from app.core.logging import get_logger, mask_identifier
from app.tasks.queue import enqueue_job

logger = get_logger(__name__)

VERIFICATION_EMAIL_JOB = "send_verification_email_job"
PASSWORD_RESET_EMAIL_JOB = "send_password_reset_email_job"
WELCOME_EMAIL_JOB = "send_welcome_email_job"


class NotificationQueue:
    """Enqueues email jobs for the worker."""

    async def _enqueue(self, function_name: str, email: str, **kwargs: Any) -> bool:
        try:
            job_id = await enqueue_job(function_name, email=email, **kwargs)
        except Exception as e:
            logger.warning(
                "notification_enqueue_failed",
                function=function_name,
                email=mask_identifier(email),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if job_id is None:
            logger.warning(
                "notification_enqueue_failed",
                function=function_name,
                email=mask_identifier(email),
            )
            return False
        return True

    async def send_verification_email(self, email: str, registration_token: str) -> bool:
        return await self._enqueue(
            VERIFICATION_EMAIL_JOB, email, registration_token=registration_token
        )

    async def send_password_reset_email(self, email: str, username: str, reset_token: str) -> bool:
        return await self._enqueue(
            PASSWORD_RESET_EMAIL_JOB, email, username=username, reset_token=reset_token
        )

    async def send_welcome_email(self, email: str, username: str) -> bool:
        return await self._enqueue(WELCOME_EMAIL_JOB, email, username=username)


_queue = NotificationQueue()


def get_notification_queue() -> NotificationQueue:
    """Dependency returning the notification queue."""
    return _queue

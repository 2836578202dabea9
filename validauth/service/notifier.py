from __future__ import annotations

import concurrent.futures
import threading
from typing import Callable, Protocol

from validauth.logging import get_logger
from validauth.service.email import EmailService

logger = get_logger(__name__)


class Notifier(Protocol):
    """Fire-and-forget outbound notifications; True means the message was accepted."""

    def notify_otp(self, email: str, otp: str) -> bool: ...

    def notify_welcome(self, email: str, username: str) -> bool: ...


class NotificationDispatcher:
    """Hands email delivery to a bounded thread pool.

    At most ``workers + queue_capacity`` deliveries are in flight; beyond
    that new ones are dropped rather than blocking the caller.
    """

    def __init__(
        self,
        email_service: EmailService,
        *,
        workers: int = 5,
        queue_capacity: int = 100,
    ) -> None:
        self.email_service = email_service
        self.capacity = max(1, workers) + max(0, queue_capacity)
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="notifier"
        )
        self._executor_shutdown = False

    def _run(self, kind: str, send: Callable[[], bool]) -> None:
        try:
            if not send():
                logger.warning("notification_failed", kind=kind)
        except Exception as exc:
            logger.error("notification_error", kind=kind, error=str(exc))
        finally:
            self._slots.release()

    def _dispatch(self, kind: str, send: Callable[[], bool]) -> bool:
        if not self._slots.acquire(blocking=False):
            logger.warning("notification_dropped", kind=kind, capacity=self.capacity)
            return False
        try:
            self._executor.submit(self._run, kind, send)
        except RuntimeError as exc:
            self._slots.release()
            logger.warning("notification_dropped", kind=kind, error=str(exc))
            return False
        return True

    def notify_otp(self, email: str, otp: str) -> bool:
        return self._dispatch("otp", lambda: self.email_service.send_otp(email, otp))

    def notify_welcome(self, email: str, username: str) -> bool:
        return self._dispatch(
            "welcome", lambda: self.email_service.send_welcome(email, username)
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool; pending deliveries are cancelled unless ``wait``."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("notifier_shutdown", wait=wait)


__all__ = ["Notifier", "NotificationDispatcher"]

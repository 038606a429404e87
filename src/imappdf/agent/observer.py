"""Mailbox watcher.

Opens the mailbox, handles every message already there, then waits for new
mail with IMAP IDLE until it is time to reconnect.

Notes:
    The IMAP client and the OCR/SMTP work are synchronous. Every blocking call
    is wrapped in ``asyncio.to_thread`` so new-mail batches can be handled
    concurrently while the watcher keeps idling.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable

import structlog

from imappdf.agent.processor import MessageProcessor
from imappdf.config import Settings
from imappdf.exceptions import DispatchError, MailboxAccessError
from imappdf.mail.mailbox import MailboxSession
from imappdf.models import ProcessingResult

logger = structlog.get_logger()


class MailboxObserver:
    """Drives the processor over the watched folder."""

    def __init__(
        self,
        settings: Settings | None = None,
        processor: MessageProcessor | None = None,
        session_factory: Callable[[Settings], MailboxSession] = MailboxSession,
        max_results: int | None = 100,
    ) -> None:
        """Initialize the observer.

        Args:
            settings: Application settings. If None, uses default settings.
            processor: Message processor. If None, creates a new one.
            session_factory: Builds a fresh mailbox session per cycle.
            max_results: Outcomes kept in ``results``; None keeps all of them.
        """
        from imappdf.config import get_settings

        self.settings = settings or get_settings()
        self.processor = processor or MessageProcessor(self.settings)
        self._session_factory = session_factory
        self._stop = threading.Event()
        # Most recent outcomes, for inspection.
        self.results: deque[ProcessingResult] = deque(maxlen=max_results)

    def stop(self) -> None:
        """Ask the watch loop to finish after the current IDLE slice."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run_forever(self) -> None:
        """Run watch cycles until stopped.

        Raises:
            MailboxAccessError: If the mailbox cannot be opened.
        """
        while not self.stopped:
            await self.run_cycle()

    async def run_cycle(self, watch: bool = True) -> None:
        """Open the mailbox, handle its messages and watch it for a while.

        Args:
            watch: If False, only handle the current messages and return.
        """
        session = self._session_factory(self.settings)
        await asyncio.to_thread(session.connect)
        batches: set[asyncio.Task[None]] = set()
        try:
            uids = await asyncio.to_thread(session.search_uids)
            logger.info("mailbox_opened", messages=len(uids))
            last_uid = max(uids, default=0)
            await self._handle_batch(session, uids)

            deadline = time.monotonic() + self.settings.watch_reconnect_seconds
            while watch and not self.stopped:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                timeout = min(self.settings.watch_idle_seconds, remaining)
                announced = await asyncio.to_thread(session.idle_wait, timeout)
                # New-mail notices can arrive with the reply to any command and
                # never reach IDLE, so look past last_uid after every slice.
                new_uids = await asyncio.to_thread(session.search_uids, last_uid)
                if not new_uids:
                    continue
                logger.info("new_messages_arrived", count=len(new_uids), announced=announced)
                last_uid = max(new_uids)
                task = asyncio.create_task(self._handle_batch(session, new_uids))
                batches.add(task)
                task.add_done_callback(batches.discard)
                task.add_done_callback(_log_batch_failure)
        finally:
            if batches:
                # Failures are logged by _log_batch_failure.
                await asyncio.gather(*batches, return_exceptions=True)
            await asyncio.to_thread(session.close)

    async def _handle_batch(self, session: MailboxSession, uids: list[int]) -> None:
        for uid in uids:
            try:
                message = await asyncio.to_thread(session.fetch_message, uid)
                if message is None:
                    continue
                result = await asyncio.to_thread(self.processor.handle_message, message)
            except (MailboxAccessError, DispatchError, OSError) as exc:
                logger.warning("message_handling_failed", uid=uid, error=str(exc))
                continue
            self.results.append(result)


def _log_batch_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        logger.warning("batch_cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("batch_failed", error=str(exc), exc_info=exc)

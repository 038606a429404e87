"""IMAP mailbox session.

This module provides the session the watcher and the message handlers share.

Notes:
    ``IMAPClient`` is synchronous and a single connection cannot run two
    commands at once, so every command (including each IDLE slice) runs under
    one re-entrant lock. A command that is queued behind an IDLE slice ends it
    at the next poll, and IDLE is not re-entered while commands are queued.
"""

from __future__ import annotations

import ssl
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import TracebackType
from typing import Any

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from imappdf.config import Settings
from imappdf.exceptions import MailboxAccessError
from imappdf.models import MailMessage

logger = structlog.get_logger()

BODY_KEY = b"BODY[]"
FLAGS_KEY = b"FLAGS"
_NEW_MAIL_RESPONSES = (b"EXISTS", b"RECENT")

# Seconds between checks for queued commands while in IDLE.
IDLE_POLL_SECONDS = 1.0


class MailboxSession:
    """A logged-in IMAP connection with the watched folder selected read-write."""

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: Callable[..., Any] = IMAPClient,
    ) -> None:
        """Initialize the session.

        Args:
            settings: Application settings. If None, uses default settings.
            client_factory: Callable building an ``IMAPClient``-compatible object.
        """
        from imappdf.config import get_settings

        self.settings = settings or get_settings()
        self._client_factory = client_factory
        self._client: Any | None = None
        self._lock = threading.RLock()
        self._queued = 0
        self._queue_changed = threading.Condition()
        self.idle_poll_seconds = IDLE_POLL_SECONDS

    def __enter__(self) -> MailboxSession:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        """Connect, log in and open the folder read-write.

        Raises:
            MailboxAccessError: If the server cannot be reached or login fails.
        """
        s = self.settings
        logger.info("imap_connecting", host=s.mail_imap_host, user=s.mail_imap_user)
        with self._lock:
            client = None
            try:
                kwargs: dict[str, Any] = {"port": s.mail_imap_port, "ssl": s.mail_imap_ssl_enable}
                if s.mail_imap_ssl_enable:
                    kwargs["ssl_context"] = ssl.create_default_context()
                client = self._client_factory(s.mail_imap_host, **kwargs)
                client.login(s.mail_imap_user, s.mail_imap_pass)
                info = client.select_folder(s.mail_imap_folder, readonly=False)
            except (IMAPClientError, OSError) as exc:
                if client is not None:
                    self._logout_quietly(client)
                raise MailboxAccessError(
                    f"Cannot open {s.mail_imap_folder} on {s.mail_imap_host}: {exc}"
                ) from exc
            self._client = client

        logger.info(
            "imap_folder_opened",
            folder=s.mail_imap_folder,
            messages=info.get(b"EXISTS") if isinstance(info, dict) else None,
        )

    def close(self) -> None:
        """Close the folder (expunging if configured) and log out."""
        with self._exclusive():
            client = self._client
            if client is None:
                return
            self._client = None
            try:
                if self.settings.mail_imap_expunge:
                    # CLOSE removes messages flagged \Deleted.
                    client.close_folder()
                else:
                    client.unselect_folder()
            except (IMAPClientError, OSError) as exc:
                logger.warning("imap_close_failed", error=str(exc))
            self._logout_quietly(client)
        logger.info("imap_disconnected")

    def search_uids(self, since_uid: int | None = None) -> list[int]:
        """Return message UIDs in the folder, optionally only those above ``since_uid``."""
        criteria: list[Any] = ["ALL"] if since_uid is None else ["UID", f"{since_uid + 1}:*"]
        with self._exclusive():
            client = self._require_client()
            try:
                uids = client.search(criteria)
            except (IMAPClientError, OSError) as exc:
                raise MailboxAccessError(f"Cannot search mailbox: {exc}") from exc
        # "n:*" always matches the highest UID, even when it is below n.
        return sorted(uid for uid in uids if since_uid is None or uid > since_uid)

    def fetch_message(self, uid: int) -> MailMessage | None:
        """Fetch one message without setting ``\\Seen``.

        Returns:
            The parsed message, or None if it vanished from the folder.
        """
        with self._exclusive():
            client = self._require_client()
            try:
                data = client.fetch([uid], ["BODY.PEEK[]", "FLAGS"])
            except (IMAPClientError, OSError) as exc:
                raise MailboxAccessError(f"Cannot fetch message {uid}: {exc}") from exc

        item = data.get(uid)
        if not item or BODY_KEY not in item:
            logger.debug("imap_message_missing", uid=uid)
            return None

        flags = [f.decode() if isinstance(f, bytes) else str(f) for f in item.get(FLAGS_KEY, ())]
        return MailMessage.from_bytes(uid, item[BODY_KEY], flags=flags, mailbox=self)

    def add_flags(self, uid: int, flags: list[str]) -> None:
        """Set flags on a message.

        Raises:
            MailboxAccessError: If the server rejects the change.
        """
        with self._exclusive():
            client = self._require_client()
            try:
                client.add_flags([uid], flags)
            except (IMAPClientError, OSError) as exc:
                raise MailboxAccessError(f"Cannot flag message {uid}: {exc}") from exc
        logger.debug("imap_flags_added", uid=uid, flags=flags)

    def idle_wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds in IDLE.

        The wait ends early when the server announces new messages or another
        thread queues a command on this session. While commands are queued,
        IDLE is not entered at all.

        Returns:
            True if the server announced new messages.
        """
        deadline = time.monotonic() + timeout
        with self._queue_changed:
            self._queue_changed.wait_for(lambda: self._queued == 0, timeout=timeout)
        if time.monotonic() >= deadline:
            return False

        responses: list[Any] = []
        with self._lock:
            client = self._require_client()
            try:
                client.idle()
                try:
                    while not _announces_new_mail(responses) and not self._queued:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            break
                        responses.extend(client.idle_check(timeout=min(self.idle_poll_seconds, remaining)))
                finally:
                    client.idle_done()
            except (IMAPClientError, OSError) as exc:
                raise MailboxAccessError(f"IDLE failed: {exc}") from exc

        return _announces_new_mail(responses)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the connection for one command, cutting a running IDLE short."""
        with self._queue_changed:
            self._queued += 1
        try:
            with self._lock:
                yield
        finally:
            with self._queue_changed:
                self._queued -= 1
                self._queue_changed.notify_all()

    def _require_client(self) -> Any:
        if self._client is None:
            raise MailboxAccessError("Mailbox session is not connected. Call connect() first.")
        return self._client

    def _logout_quietly(self, client: Any) -> None:
        try:
            client.logout()
        except (IMAPClientError, OSError) as exc:
            logger.warning("imap_logout_failed", error=str(exc))


def _announces_new_mail(responses: list[Any]) -> bool:
    return any(
        isinstance(r, tuple) and len(r) > 1 and r[1] in _NEW_MAIL_RESPONSES
        for r in responses
    )

"""Parsed IMAP message handle.

The mailbox session owns the message; the processor only reads it and sets
flags through the :class:`FlagStore` it was fetched from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from email import message_from_bytes, policy
from email.message import Message
from email.utils import getaddresses
from typing import Protocol

SEEN = "\\Seen"
DELETED = "\\Deleted"


class FlagStore(Protocol):
    """Anything that can persist message flags (the IMAP session)."""

    def add_flags(self, uid: int, flags: list[str]) -> None: ...


def _parse_address_list(values: list[str]) -> list[str]:
    # getaddresses returns list[(name, addr)]
    return [addr for _, addr in getaddresses(values) if addr]


@dataclass
class MailMessage:
    """A message fetched from the watched folder."""

    uid: int
    content: Message
    flags: set[str] = field(default_factory=set)
    mailbox: FlagStore | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_bytes(
        cls,
        uid: int,
        raw: bytes,
        flags: list[str] | set[str] | None = None,
        mailbox: FlagStore | None = None,
    ) -> MailMessage:
        """Parse raw RFC 822 bytes into a message handle."""
        content = message_from_bytes(raw, policy=policy.default)
        return cls(uid=uid, content=content, flags=set(flags or ()), mailbox=mailbox)

    @property
    def message_id(self) -> str:
        return str(self.content.get("Message-ID", "") or "").strip()

    @property
    def subject(self) -> str:
        value = self.content.get("Subject")
        return str(value).strip() if value is not None else ""

    @property
    def senders(self) -> list[str]:
        return _parse_address_list([str(v) for v in self.content.get_all("From", [])])

    @property
    def to_addrs(self) -> list[str]:
        return _parse_address_list([str(v) for v in self.content.get_all("To", [])])

    @property
    def is_seen(self) -> bool:
        return SEEN in self.flags

    @property
    def is_deleted(self) -> bool:
        return DELETED in self.flags

    def add_flag(self, flag: str) -> None:
        """Set a flag locally and on the server."""
        if self.mailbox is not None:
            self.mailbox.add_flags(self.uid, [flag])
        self.flags.add(flag)

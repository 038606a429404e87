"""Mailbox watching and per-message orchestration."""

from .observer import MailboxObserver
from .processor import MessageProcessor, choose_output_set, resolve_recipient

__all__ = ["MailboxObserver", "MessageProcessor", "choose_output_set", "resolve_recipient"]

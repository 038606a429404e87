"""Mail protocol glue: IMAP session, attachment traversal and SMTP dispatch."""

from .mailbox import MailboxSession
from .sender import SMTPSender, compose_message
from .traversal import AttachmentSet, traverse

__all__ = ["AttachmentSet", "MailboxSession", "SMTPSender", "compose_message", "traverse"]

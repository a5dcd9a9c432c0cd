"""Inbox de-duplication for consumed messages."""

from ticketing_reliability.infra.events.inbox.models import InboxMessage
from ticketing_reliability.infra.events.inbox.repository import InboxRepository, deduplicating

__all__ = ["InboxMessage", "InboxRepository", "deduplicating"]

from __future__ import annotations


class ChatError(Exception):
    """Base class for every recoverable failure raised by the sync engine."""


class ValidationError(ChatError):
    """Input rejected before any store or feed call was made."""


class PersistenceError(ChatError):
    """The store refused a write; no row was created."""


class LoadError(ChatError):
    """A backlog, roster or directory fetch failed or timed out."""


class SubscriptionError(ChatError):
    """A change-feed subscription could not be opened or was lost."""

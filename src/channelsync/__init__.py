"""Realtime channel synchronization: messages and presence kept in step with a shared store."""

from .client import ChatClient, ViewState
from .directory import ChannelDirectory
from .errors import ChatError, LoadError, PersistenceError, SubscriptionError, ValidationError
from .feed import ChangeFeed, Subscription
from .message_stream import MessageState, MessageStream, apply_message_event
from .models import ChangeEvent, Channel, Message, Session
from .presence import PresenceTracker, RosterState, apply_presence_event
from .session_manager import SessionManager
from .store import InMemoryStore, Order

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "Channel",
    "ChannelDirectory",
    "ChatClient",
    "ChatError",
    "InMemoryStore",
    "LoadError",
    "Message",
    "MessageState",
    "MessageStream",
    "Order",
    "PersistenceError",
    "PresenceTracker",
    "RosterState",
    "Session",
    "SessionManager",
    "Subscription",
    "SubscriptionError",
    "ValidationError",
    "ViewState",
    "apply_message_event",
    "apply_presence_event",
]

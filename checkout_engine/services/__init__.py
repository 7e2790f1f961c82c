"""
Checkout Engine Services
Backend client, session storage, event bus and audit trail.
"""

from checkout_engine.services.backend_client import IBackendApi, BackendClient
from checkout_engine.services.session_store import (
    ISessionStore,
    InMemorySessionStore,
    SessionKeys,
)
from checkout_engine.services.event_bus import IEventBus, InMemoryEventBus, EventHandler
from checkout_engine.services.audit import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    InMemoryAuditLog,
)
from checkout_engine.services.resilience import CircuitBreaker, CircuitState, with_circuit_breaker
from checkout_engine.services.navigation import INavigator, RecordingNavigator

__all__ = [
    # Backend
    "IBackendApi",
    "BackendClient",
    # Session
    "ISessionStore",
    "InMemorySessionStore",
    "SessionKeys",
    # Events
    "IEventBus",
    "InMemoryEventBus",
    "EventHandler",
    # Audit
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "InMemoryAuditLog",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "with_circuit_breaker",
    # Navigation
    "INavigator",
    "RecordingNavigator",
]

"""
Append-only audit trail for checkout transitions, keyed by correlation id.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from checkout_engine.schemas.domain import utcnow


class AuditEventType(str, Enum):
    CHECKOUT_STARTED = "checkout.started"
    STATE_CHANGED = "checkout.state_changed"
    ATTEMPT_CREATED = "attempt.created"
    ATTEMPT_SUPERSEDED = "attempt.superseded"
    ATTEMPT_UPDATED = "attempt.updated"
    ESIGN_REQUIRED = "esign.required"
    ESIGN_FINISHED = "esign.finished"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_FAILED = "payment.failed"
    CHECKOUT_CANCELLED = "checkout.cancelled"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "checkout", "attempt", "esign"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "user"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_all(self) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._logs)

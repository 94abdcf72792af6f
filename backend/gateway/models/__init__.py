"""ORM model exports for convenient imports elsewhere in the gateway."""

from gateway.models.base import Base
from gateway.models.gw_audit import GwAuditLog
from gateway.models.gw_event_log import GwEventLog
from gateway.models.gw_idempotency_key import GwIdempotencyKey

__all__ = [
    "Base",
    "GwAuditLog",
    "GwEventLog",
    "GwIdempotencyKey",
]

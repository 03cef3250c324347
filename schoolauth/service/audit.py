from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional

from schoolauth.logging import get_logger
from schoolauth.storage.models import AuditLogEntry

logger = get_logger(__name__)


class AuditAction(str, Enum):
    USER_CREATED = "USER_CREATED"
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_REINSTATED = "ACCOUNT_REINSTATED"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    VERIFICATION_RESENT = "VERIFICATION_RESENT"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PROFILE_UPDATED = "PROFILE_UPDATED"


class AuditEmitter:
    """Append-only security event log.

    ``record`` never raises: a failing sink is logged and the caller's
    auth operation carries on.
    """

    def __init__(self, sink: Callable[[AuditLogEntry], None]) -> None:
        self._sink = sink

    def record(
        self,
        action: AuditAction,
        account_id: Optional[str] = None,
        *,
        details: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            action=action.value,
            account_id=account_id,
            details=details,
            ip_address=ip,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        try:
            self._sink(entry)
        except Exception as exc:
            logger.error(
                "audit_log_failed",
                action=entry.action,
                account_id=account_id,
                error=str(exc),
            )
            return None
        logger.info(
            "audit_event",
            action=entry.action,
            account_id=account_id,
            ip=ip,
            **entry.metadata,
        )
        return entry

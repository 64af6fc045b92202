"""
Audit trail for export lifecycle events.

Writes never raise into the caller: a failed insert is logged and dropped,
so auditing cannot turn a successful export into a failed one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .database import JobDatabase
from .models import AuditEvent

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "session",
    "private_key",
    "privatekey",
)

REDACTED = "[REDACTED]"


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Replace values under sensitive-looking keys, recursing into dicts."""
    if not metadata:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in metadata.items():
        lower_key = key.lower()
        if any(sensitive in lower_key for sensitive in SENSITIVE_KEYS):
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_metadata(value)
        else:
            sanitized[key] = value
    return sanitized


class AuditLogService:
    def __init__(self, database: JobDatabase) -> None:
        self._database = database
        self._pending: Set[asyncio.Task] = set()

    async def log(self, event: AuditEvent) -> None:
        entry = event.model_copy(update={"metadata": sanitize_metadata(event.metadata)})
        try:
            await asyncio.to_thread(self._database.insert_audit_log, entry)
        except Exception as e:
            logger.error(f"Failed to insert audit log ({event.action.value} {event.entity_id}): {e}")
            return
        logger.debug(f"Audit log inserted: {event.action.value} {event.entity_type} {event.entity_id}")

    def log_async(self, event: AuditEvent) -> None:
        """Schedule ``log`` on the running loop without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.log(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every scheduled audit write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from entitlement_sync.observability import incr_metric, log_event


AuditStatus = Literal["received", "queued", "processed", "ignored", "failed", "error"]

_MAX_PAYLOAD_CHARS = 65536


class AuditLog:
    """Append-only webhook log. Rows are inserted, never updated or deleted."""

    def __init__(self, client: Any, table_name: str) -> None:
        self._client = client
        self._table = table_name

    def record(
        self,
        *,
        event_type: str | None,
        status: AuditStatus,
        payload: str,
        message: str | None = None,
        sender_address: str | None = None,
        installation_id: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        row = {
            "event_type": event_type or "unknown",
            "status": status,
            "payload": payload[:_MAX_PAYLOAD_CHARS],
            "message": message,
            "ip_address": sender_address,
            "installation_id": installation_id,
            "request_id": request_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._client.table(self._table).insert(row).execute()
        except Exception as exc:
            # Losing an audit row must not turn an accepted webhook into a sender retry.
            incr_metric("audit.write.failed", status=status)
            log_event(
                "webhook_audit_write_failed",
                level=logging.ERROR,
                request_id=request_id,
                event_type=event_type,
                status=status,
                error=str(exc),
            )
            return False
        incr_metric("audit.write.recorded", status=status)
        return True

from __future__ import annotations

import logging
from typing import Any

from entitlement_sync.models.subscriptions import Installation
from entitlement_sync.observability import incr_metric, log_event


_INSTALLATION_COLUMNS = (
    "id, name, slug, api_url, ip_address, login_url, button_text, api_key, webhook_secret, "
    "is_active, notes, created_at, updated_at"
)


class InstallationRegistry:
    """Read-only lookups over the installations table.

    Installations are administered out-of-band; nothing here writes to the table.
    """

    def __init__(self, client: Any, table_name: str) -> None:
        self._client = client
        self._table = table_name

    def _rows(self, column: str, value: str, *, active_only: bool) -> list[dict[str, Any]]:
        query = self._client.table(self._table).select(_INSTALLATION_COLUMNS).eq(column, value)
        if active_only:
            query = query.eq("is_active", True)
        return query.execute().data or []

    def resolve_by_sender(self, sender_address: str | None, *, request_id: str | None = None) -> Installation | None:
        if not sender_address:
            return None
        rows = self._rows("ip_address", sender_address, active_only=True)
        if not rows:
            return None
        if len(rows) > 1:
            # Duplicate sender addresses are a registry misconfiguration; refuse to guess.
            incr_metric("installations.resolve.ambiguous")
            log_event(
                "installation_sender_ambiguous",
                level=logging.ERROR,
                request_id=request_id,
                sender_address=sender_address,
                installation_ids=[row.get("id") for row in rows],
            )
            return None
        return Installation(**rows[0])

    def get_by_id(self, installation_id: str) -> Installation | None:
        rows = self._rows("id", installation_id, active_only=False)
        return Installation(**rows[0]) if rows else None

    def get_by_slug(self, slug: str) -> Installation | None:
        rows = self._rows("slug", slug, active_only=False)
        return Installation(**rows[0]) if rows else None

    def is_active(self, installation_id: str) -> bool:
        installation = self.get_by_id(installation_id)
        return bool(installation and installation.is_active)

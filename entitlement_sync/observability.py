"""Structured logs and process-local counters for the sync service.

Every log line is one JSON object keyed by `event`, carrying the request id when the work was
triggered by an HTTP request or a queued job. Counters live in this process only; operators
flush them into `observability_metric_snapshots` (and optionally an HTTP sink) through the
super-admin endpoints. Names follow `<area>.<thing>.<outcome>`, for example
`webhook.events.rejected`, `webhook.jobs.retried`, `reconciliation.applied` and `cache.errors`.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any

import httpx


SERVICE_NAME = "entitlement-sync"
METRIC_SNAPSHOT_TABLE = "observability_metric_snapshots"

logger = logging.getLogger("entitlement_sync")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    """`name|label=value,...` with labels sorted, so call-site keyword order never splits a series."""
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot() -> dict[str, int]:
    with _metrics_lock:
        return dict(_metrics_counter)


def metric_total(snapshot: dict[str, int], prefix: str) -> int:
    """Sum of one counter across all of its label sets."""
    return sum(value for key, value in snapshot.items() if key == prefix or key.startswith(f"{prefix}|"))


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def _export_snapshot(
    payload: dict[str, Any],
    *,
    export_url: str,
    bearer_token: str | None,
    timeout_seconds: float,
) -> bool:
    headers = {"Content-Type": "application/json"}
    if bearer_token:
        headers["Authorization"] = f"Bearer {bearer_token}"
    context = {"request_id": payload.get("request_id"), "source": payload["source"], "export_url": export_url}
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.post(export_url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        log_event("metrics_snapshot_export_failed", level=logging.WARNING, error=str(exc), **context)
        return False
    if response.status_code >= 400:
        log_event(
            "metrics_snapshot_export_failed",
            level=logging.WARNING,
            status_code=response.status_code,
            response_text=response.text[:200],
            **context,
        )
        return False
    log_event("metrics_snapshot_exported", status_code=response.status_code, **context)
    return True


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    """Store the current counters; True once the row is written.

    The HTTP export is best effort and never changes the result. Counters are only reset
    after a successful write, so a failed flush loses nothing.
    """
    snapshot = metrics_snapshot()
    row = {"source": source, "request_id": request_id, "counters": snapshot}
    try:
        supabase_client.table(METRIC_SNAPSHOT_TABLE).insert(row).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    if export_url:
        _export_snapshot(
            {"service": SERVICE_NAME, **row},
            export_url=export_url,
            bearer_token=export_bearer_token,
            timeout_seconds=export_timeout_seconds,
        )

    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(snapshot),
        webhook_events_received=metric_total(snapshot, "webhook.events.received"),
        webhook_jobs_failed=metric_total(snapshot, "webhook.jobs.failed"),
    )
    if reset_after_persist:
        reset_metrics()
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))


def configure_logging(level: int = logging.INFO) -> None:
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)

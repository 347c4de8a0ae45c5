"""Continuous queue drain: `python -m entitlement_sync.worker`."""

from __future__ import annotations

import logging
import signal
import threading
from uuid import uuid4

from entitlement_sync.config import settings
from entitlement_sync.observability import configure_logging, log_event
from entitlement_sync.services.jobs import run_pending_jobs
from entitlement_sync.services.runtime import (
    get_audit_log,
    get_engine,
    get_installation_registry,
    get_job_queue,
)


def run_worker(stop: threading.Event, *, max_iterations: int | None = None) -> int:
    """Drain due jobs until `stop` is set. Returns the number of drain passes made."""
    queue = get_job_queue()
    registry = get_installation_registry()
    engine = get_engine()
    audit = get_audit_log()
    iterations = 0
    while not stop.is_set():
        run_id = f"worker-{uuid4()}"
        try:
            summary = run_pending_jobs(queue=queue, registry=registry, engine=engine, audit=audit, request_id=run_id)
        except Exception as exc:
            # Queue table unreachable; back off for one poll interval and try again.
            log_event("webhook_worker_pass_failed", level=logging.ERROR, request_id=run_id, error=str(exc))
            summary = {"claimed": 0}
        iterations += 1
        if max_iterations is not None and iterations >= max_iterations:
            break
        if not summary.get("claimed"):
            stop.wait(queue.options.poll_seconds)
    return iterations


def main() -> None:
    configure_logging()
    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log_event("webhook_worker_stopping", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    options = settings.queue_options()
    log_event(
        "webhook_worker_started",
        queue_name=options.queue_name,
        worker_slots=options.worker_slots,
        poll_seconds=options.poll_seconds,
    )
    run_worker(stop)
    log_event("webhook_worker_stopped", queue_name=options.queue_name)


if __name__ == "__main__":
    main()

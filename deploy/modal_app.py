import modal

app = modal.App("entitlement-sync")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic[email]>=2.7",
        "pydantic-settings>=2.3",
        "supabase>=2.5",
        "psycopg2-binary>=2.9",
        "redis>=5.0",
        "bcrypt>=4.1",
        "python-jose[cryptography]>=3.3",
        "httpx>=0.27",
    )
    .add_local_python_source("entitlement_sync")
)

secrets = [modal.Secret.from_name("entitlement-sync-env")]


@app.function(image=image, secrets=secrets)
@modal.asgi_app()
def fastapi_app():
    from entitlement_sync.main import app as web_app

    return web_app


@app.function(image=image, secrets=secrets, schedule=modal.Period(minutes=1), timeout=300)
def drain_webhook_jobs():
    from entitlement_sync.observability import configure_logging
    from entitlement_sync.services.jobs import run_pending_jobs
    from entitlement_sync.services.runtime import (
        get_audit_log,
        get_engine,
        get_installation_registry,
        get_job_queue,
    )

    configure_logging()
    return run_pending_jobs(
        queue=get_job_queue(),
        registry=get_installation_registry(),
        engine=get_engine(),
        audit=get_audit_log(),
        request_id="modal-schedule",
    )

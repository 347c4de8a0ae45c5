from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class TableNames:
    installations: str = "amember_installations"
    subscriptions: str = "amember_subscriptions"
    products: str = "amember_products"
    webhook_logs: str = "amember_webhook_logs"
    webhook_jobs: str = "amember_webhook_jobs"
    users: str = "users"


@dataclass(frozen=True)
class ReconciliationOptions:
    user_creation_enabled: bool = True
    sync_user_data: bool = True
    syncable_fields: tuple[str, ...] = ("email", "name_f", "name_l")


@dataclass(frozen=True)
class QueueOptions:
    queue_name: str = "amember-webhooks"
    max_attempts: int = 3
    retry_delay_seconds: int = 60
    worker_slots: int = 4
    batch_size: int = 25
    poll_seconds: float = 5.0
    visibility_timeout_seconds: int = 900


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    internal_scheduler_secret: str | None = None
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True
    cache_ttl_seconds: int = 300
    webhook_enabled: bool = True
    webhook_route_prefix: str = "/amember/webhook"
    webhook_signature_header: str = "X-Amember-Signature"
    webhook_trust_forwarded_for: bool = False
    webhook_use_queue: bool = True
    webhook_queue_name: str = "amember-webhooks"
    webhook_retry_failed: bool = True
    webhook_max_retries: int = 3
    webhook_retry_delay_seconds: int = 60
    webhook_worker_slots: int = 4
    webhook_worker_batch_size: int = 25
    webhook_worker_poll_seconds: float = 5.0
    webhook_job_visibility_timeout_seconds: int = 900
    user_creation_enabled: bool = True
    sync_user_data: bool = True
    syncable_fields: list[str] = ["email", "name_f", "name_l"]
    installations_table: str = "amember_installations"
    subscriptions_table: str = "amember_subscriptions"
    products_table: str = "amember_products"
    webhook_logs_table: str = "amember_webhook_logs"
    webhook_jobs_table: str = "amember_webhook_jobs"
    users_table: str = "users"
    debug_webhooks: bool = False
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    def table_names(self) -> TableNames:
        return TableNames(
            installations=self.installations_table,
            subscriptions=self.subscriptions_table,
            products=self.products_table,
            webhook_logs=self.webhook_logs_table,
            webhook_jobs=self.webhook_jobs_table,
            users=self.users_table,
        )

    def reconciliation_options(self) -> ReconciliationOptions:
        return ReconciliationOptions(
            user_creation_enabled=self.user_creation_enabled,
            sync_user_data=self.sync_user_data,
            syncable_fields=tuple(self.syncable_fields),
        )

    def queue_options(self) -> QueueOptions:
        # A disabled retry policy still gets its first attempt.
        max_attempts = max(1, int(self.webhook_max_retries)) if self.webhook_retry_failed else 1
        return QueueOptions(
            queue_name=self.webhook_queue_name,
            max_attempts=max_attempts,
            retry_delay_seconds=max(0, int(self.webhook_retry_delay_seconds)),
            worker_slots=max(1, min(int(self.webhook_worker_slots), 32)),
            batch_size=max(1, min(int(self.webhook_worker_batch_size), 200)),
            poll_seconds=max(0.1, float(self.webhook_worker_poll_seconds)),
            visibility_timeout_seconds=max(30, int(self.webhook_job_visibility_timeout_seconds)),
        )


settings = Settings()

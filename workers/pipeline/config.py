# workers/pipeline/config.py
"""
Configuration for the pipeline sweep worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the pipeline sweep worker."""

    # Worker identification
    worker_id: str = os.getenv("WORKER_ID", f"worker-{os.getpid()}")

    # Polling configuration
    poll_interval_seconds: int = int(os.getenv("WORKER_POLL_INTERVAL", "15"))
    max_poll_interval_seconds: int = int(os.getenv("WORKER_MAX_POLL_INTERVAL", "120"))
    batch_size: int = int(os.getenv("WORKER_BATCH_SIZE", "25"))

    # Processing configuration
    max_sweeps_per_run: int = int(os.getenv("WORKER_MAX_SWEEPS_PER_RUN", "0"))  # 0 = infinite

    # Claim recovery
    notification_claim_ttl_minutes: int = int(os.getenv("WORKER_NOTIFICATION_CLAIM_TTL_MINUTES", "15"))
    claim_ttl_minutes: int = int(os.getenv("WORKER_CLAIM_TTL_MINUTES", "0"))  # 0 = leave to manual resubmission
    stale_claim_check_interval_minutes: int = int(os.getenv("WORKER_STALE_CHECK_MINUTES", "5"))

    # Temp directory for downloads
    temp_dir: str = os.getenv("WORKER_TEMP_DIR", "/tmp/khutbah-pipeline")

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # R2 Storage
    r2_account_id: str = os.getenv("R2_ACCOUNT_ID", "")
    r2_access_key_id: str = os.getenv("R2_ACCESS_KEY_ID", "")
    r2_secret_access_key: str = os.getenv("R2_SECRET_ACCESS_KEY", "")
    r2_bucket_name: str = os.getenv("R2_BUCKET_NAME", "")

    # AI and push providers
    google_api_key: str = os.getenv("GOOGLE_API_KEY", "")
    onesignal_app_id: str = os.getenv("ONESIGNAL_APP_ID", "")
    onesignal_api_key: str = os.getenv("ONESIGNAL_API_KEY", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if not self.r2_account_id:
            errors.append("R2_ACCOUNT_ID is required")
        if not self.r2_access_key_id:
            errors.append("R2_ACCESS_KEY_ID is required")
        if not self.r2_secret_access_key:
            errors.append("R2_SECRET_ACCESS_KEY is required")
        if not self.r2_bucket_name:
            errors.append("R2_BUCKET_NAME is required")
        if not self.google_api_key:
            errors.append("GOOGLE_API_KEY is required")
        if not self.onesignal_app_id or not self.onesignal_api_key:
            errors.append("ONESIGNAL_APP_ID and ONESIGNAL_API_KEY are required")
        if self.batch_size <= 0:
            errors.append("WORKER_BATCH_SIZE must be positive")
        if self.notification_claim_ttl_minutes <= 0:
            errors.append("WORKER_NOTIFICATION_CLAIM_TTL_MINUTES must be positive")
        if self.claim_ttl_minutes < 0:
            errors.append("WORKER_CLAIM_TTL_MINUTES cannot be negative")

        return errors


def get_config() -> WorkerConfig:
    """Get worker configuration from environment."""
    return WorkerConfig()

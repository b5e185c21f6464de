"""
Propagation Configuration

Loads exposure-chain engine settings from environment variables
(prefixed with EXPOSURE_) or a local .env file.
"""

from typing import Optional
from functools import lru_cache

from pydantic_settings import BaseSettings


class PropagationSettings(BaseSettings):
    """Engine configuration loaded from environment."""

    # Traversal bounds
    max_chain_depth: int = 10
    retention_days: int = 180
    default_incubation_days: int = 30

    # Optional JSON file overriding the built-in incubation table
    incubation_config_path: Optional[str] = None

    # Batching
    batch_size: int = 500

    # Bounded retries for transient store failures
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.1
    store_retry_max_delay: float = 2.0

    # Rate limits (requests per hour)
    rate_limit_positive_report: int = 5
    rate_limit_negative_test: int = 10
    rate_limit_report_deletion: int = 5
    rate_limit_window_seconds: int = 3600

    # Input limits
    max_condition_labels_length: int = 500
    max_reporter_id_length: int = 128
    max_display_name_length: int = 50

    # Push delivery (FCM HTTP v1)
    push_enabled: bool = False
    fcm_project_id: str = ""
    fcm_access_token: str = ""
    fcm_endpoint: str = "https://fcm.googleapis.com/v1"
    fcm_timeout: float = 10.0

    class Config:
        env_prefix = "EXPOSURE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def retention_millis(self) -> int:
        """Retention period in epoch milliseconds."""
        return self.retention_days * 24 * 60 * 60 * 1000


@lru_cache()
def get_propagation_settings() -> PropagationSettings:
    """
    Get cached propagation settings.
    Uses lru_cache to avoid reloading on every call.
    """
    return PropagationSettings()

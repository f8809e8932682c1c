"""
Configuration management for NIPR verification
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Default database path (relative to repo root)
DEFAULT_DB_PATH = os.path.join("data", "nipr_queue.db")

# A lease must outlive the longest possible invocation, otherwise a job
# that is still running would be reclaimed underneath it.
DEFAULT_LEASE_SECONDS = 600
DEFAULT_EXECUTION_CAP_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 3


class ConfigurationError(Exception):
    """Raised when required settings are missing or inconsistent."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class QueueSettings:
    """Runtime settings for the verification queue.

    Attributes:
        db_path:               SQLite file holding the ``nipr_jobs`` table.
        lease_seconds:         How long a claim stays valid before it is
                               considered stale.
        execution_cap_seconds: Maximum wall-clock time of one invocation.
        max_attempts:          Claims allowed before a job that keeps dying
                               is dead-lettered.
        app_url:               Public base URL used for self-triggering.
        cron_secret:           Shared secret for the worker trigger.
        user_data_api_url:     Base URL of the service storing derived
                               carrier/state data (optional).
        downloads_dir:         Where the executor saves report PDFs.
        chain_timeout_seconds: Socket timeout for the continuation call.
    """

    db_path: str = DEFAULT_DB_PATH
    lease_seconds: int = DEFAULT_LEASE_SECONDS
    execution_cap_seconds: int = DEFAULT_EXECUTION_CAP_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    app_url: str = ""
    cron_secret: str = ""
    user_data_api_url: str = ""
    downloads_dir: str = os.path.join("downloads", "nipr")
    chain_timeout_seconds: int = 5

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.lease_seconds <= self.execution_cap_seconds:
            raise ConfigurationError(
                f"Lease ({self.lease_seconds}s) must exceed the execution "
                f"cap ({self.execution_cap_seconds}s)"
            )
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> "QueueSettings":
        """Build settings from environment variables (see ``.env``)."""
        settings = cls(
            db_path=os.getenv("NIPR_QUEUE_DB_PATH", DEFAULT_DB_PATH),
            lease_seconds=_env_int("NIPR_LEASE_SECONDS", DEFAULT_LEASE_SECONDS),
            execution_cap_seconds=_env_int(
                "NIPR_EXECUTION_CAP_SECONDS", DEFAULT_EXECUTION_CAP_SECONDS
            ),
            max_attempts=_env_int("NIPR_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            app_url=os.getenv("APP_URL", ""),
            cron_secret=os.getenv("CRON_SECRET", ""),
            user_data_api_url=os.getenv("NIPR_USER_DATA_API_URL", ""),
            downloads_dir=os.getenv(
                "NIPR_DOWNLOADS_DIR", os.path.join("downloads", "nipr")
            ),
            chain_timeout_seconds=_env_int("NIPR_CHAIN_TIMEOUT_SECONDS", 5),
        )
        logger.debug("Loaded queue settings (db=%s, lease=%ds)",
                     settings.db_path, settings.lease_seconds)
        return settings


# ------------------------------------------------------------------
# Automation (billing / payment) configuration
# ------------------------------------------------------------------

_BILLING_VARS = {
    "first_name": "NIPR_BILLING_FIRST_NAME",
    "last_name": "NIPR_BILLING_LAST_NAME",
    "address": "NIPR_BILLING_ADDRESS",
    "city": "NIPR_BILLING_CITY",
    "state": "NIPR_BILLING_STATE",
    "zip": "NIPR_BILLING_ZIP",
    "phone": "NIPR_BILLING_PHONE",
}

_PAYMENT_VARS = {
    "card_number": "NIPR_CARD_NUMBER",
    "expiry": "NIPR_CARD_EXPIRY",
    "cvc": "NIPR_CARD_CVC",
}


@dataclass
class NIPRConfig:
    """Billing and payment details used to purchase a PDB Detail Report."""

    billing: Dict[str, str] = field(default_factory=dict)
    payment: Dict[str, str] = field(default_factory=dict)
    headless: bool = True


def load_nipr_config(env: Optional[Dict[str, str]] = None) -> NIPRConfig:
    """Read billing/payment settings, failing loudly on anything missing."""
    source = os.environ if env is None else env

    missing: List[str] = [
        var
        for var in list(_BILLING_VARS.values()) + list(_PAYMENT_VARS.values())
        if not source.get(var)
    ]
    if missing:
        raise ConfigurationError(
            "Missing required NIPR environment variables: " + ", ".join(missing)
        )

    return NIPRConfig(
        billing={key: source[var] for key, var in _BILLING_VARS.items()},
        payment={key: source[var] for key, var in _PAYMENT_VARS.items()},
        headless=source.get("NIPR_HEADLESS", "true").lower() != "false",
    )

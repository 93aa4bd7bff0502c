"""
Billing configuration loader.

Loads grace periods, dunning backoff, reminder lead times and the beta code
table from config/billing.yml.

Consumers:
  - EntitlementEvaluator: grace and warning windows
  - DunningTracker: retry backoff cap
  - ExpiryReminderScheduler: reminder lead times
  - BetaAccess: code -> expiry lookup

Usage:
    from billing_core.config.billing_config import get_billing_config

    config = get_billing_config()
    config.grace_period_days        # 7
    config.beta_codes.lookup("LEB BETA")
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from billing_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_BETA_GRACE_DAYS = 0
DEFAULT_BETA_WARNING_DAYS = 30
DEFAULT_MAX_RETRY_INTERVAL_DAYS = 7
DEFAULT_REMINDER_LEAD_DAYS = (30, 14, 7, 3, 1)
DEFAULT_MAX_CONFLICT_RETRIES = 3


class BetaCodeLookup:
    """
    Read-only mapping of beta access code -> expiry instant.

    Codes are matched after stripping surrounding whitespace; matching is
    case-sensitive.
    """

    def __init__(self, codes: Optional[Mapping[str, datetime]] = None):
        self._codes: Dict[str, datetime] = dict(codes or {})

    def lookup(self, code: Optional[str]) -> Optional[datetime]:
        if not code:
            return None
        return self._codes.get(code.strip())

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and self.lookup(code) is not None

    def __len__(self) -> int:
        return len(self._codes)


@dataclass(frozen=True)
class BillingConfig:
    """Resolved billing configuration."""
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    beta_grace_days: int = DEFAULT_BETA_GRACE_DAYS
    beta_warning_days: int = DEFAULT_BETA_WARNING_DAYS
    max_retry_interval_days: int = DEFAULT_MAX_RETRY_INTERVAL_DAYS
    reminder_lead_days: Tuple[int, ...] = DEFAULT_REMINDER_LEAD_DAYS
    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES
    beta_codes: BetaCodeLookup = field(default_factory=BetaCodeLookup, compare=False)


def _to_expiry(code: str, value: Any) -> datetime:
    """Parse a beta code expiry (date or datetime) into a UTC instant."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid expiry for beta code '{code}': {value}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ConfigurationError(f"Invalid expiry for beta code '{code}': {value!r}")


def _non_negative_int(raw: Dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ConfigurationError(f"'{key}' must be a non-negative integer, got {value!r}")
    return value


def build_billing_config(raw: Optional[Dict[str, Any]]) -> BillingConfig:
    """
    Build a BillingConfig from the parsed YAML document.

    Raises:
        ConfigurationError: If any value is out of range
    """
    raw = raw or {}
    entitlements = raw.get("entitlements", {}) or {}
    dunning = raw.get("dunning", {}) or {}
    reminders = raw.get("reminders", {}) or {}

    lead_days = reminders.get("lead_days", list(DEFAULT_REMINDER_LEAD_DAYS))
    if not isinstance(lead_days, list) or not all(
        isinstance(d, int) and not isinstance(d, bool) and d > 0 for d in lead_days
    ):
        raise ConfigurationError(f"'reminders.lead_days' must be positive integers, got {lead_days!r}")
    if len(set(lead_days)) != len(lead_days):
        raise ConfigurationError("'reminders.lead_days' must not repeat a lead time")

    max_retry = _non_negative_int(dunning, "max_retry_interval_days", DEFAULT_MAX_RETRY_INTERVAL_DAYS)
    if max_retry < 1:
        raise ConfigurationError("'dunning.max_retry_interval_days' must be at least 1")

    max_conflict = _non_negative_int(dunning, "max_conflict_retries", DEFAULT_MAX_CONFLICT_RETRIES)
    if max_conflict < 1:
        raise ConfigurationError("'dunning.max_conflict_retries' must be at least 1")

    codes = {
        str(code): _to_expiry(str(code), expiry)
        for code, expiry in (raw.get("beta_codes", {}) or {}).items()
    }

    return BillingConfig(
        grace_period_days=_non_negative_int(entitlements, "grace_period_days", DEFAULT_GRACE_PERIOD_DAYS),
        beta_grace_days=_non_negative_int(entitlements, "beta_grace_days", DEFAULT_BETA_GRACE_DAYS),
        beta_warning_days=_non_negative_int(entitlements, "beta_warning_days", DEFAULT_BETA_WARNING_DAYS),
        max_retry_interval_days=max_retry,
        reminder_lead_days=tuple(lead_days),
        max_conflict_retries=max_conflict,
        beta_codes=BetaCodeLookup(codes),
    )


class BillingConfigLoader:
    """
    Thread-safe singleton loader for config/billing.yml.

    A missing file is not fatal: defaults apply and no beta codes are valid.
    """

    _instance: Optional["BillingConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("BILLING_CONFIG_PATH")
        self._config = BillingConfig()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            # Repository root, relative to backend/billing_core/config/
            Path(__file__).parent.parent.parent.parent / "config" / "billing.yml",
            Path(os.getcwd()) / "config" / "billing.yml",
            Path(os.getcwd()) / ".." / "config" / "billing.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved
        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            if path is None or not path.exists():
                logger.warning("billing.yml not found, using default billing config")
                self._config = BillingConfig()
                return

            logger.info("Loading billing config from %s", path)
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            self._config = build_billing_config(raw)
            logger.info(
                "Loaded billing config with %d beta codes, lead_days=%s",
                len(self._config.beta_codes),
                list(self._config.reminder_lead_days),
            )

    def reload(self) -> None:
        """Re-read the YAML from disk (e.g. after a config change)."""
        self._load()

    @property
    def config(self) -> BillingConfig:
        return self._config


def get_billing_config(config_path: Optional[str] = None) -> BillingConfig:
    """Return the resolved config from the singleton loader."""
    return BillingConfigLoader(config_path).config


def reset_billing_config_loader() -> None:
    """Reset singleton (for tests only)."""
    BillingConfigLoader._instance = None

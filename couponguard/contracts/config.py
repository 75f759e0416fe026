"""
Run configuration for the CouponGuard pipeline.

Defaults come from contracts/schemas.py; a YAML file can override any field.
Configuration is validated before any source data is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from couponguard.contracts.schemas import (
    CAMPAIGN_ALLOW_LIST,
    CHANNEL_LABELS,
    CORRELATION_WINDOW_DAYS,
    CUSTOMER_USER_TYPE,
    FEE_TYPE,
    PAYMENT_STATES,
    SOURCE_LOOKBACK_DAYS,
    TRACKED_CHANNELS,
)


class ConfigurationError(ValueError):
    """Invalid or incomplete run configuration. Fatal before processing starts."""


def _require_str(name: str, value) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{name} must be a non-empty string, got {value!r}")


def _require_str_list(name: str, value) -> None:
    if not isinstance(value, list) or not value:
        raise ConfigurationError(f"{name} must be a non-empty list, got {value!r}")
    if not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{name} must contain only strings, got {value!r}")


@dataclass
class PipelineConfig:
    campaign_allow_list: list[str] = field(default_factory=lambda: list(CAMPAIGN_ALLOW_LIST))
    channel_labels: dict[str, str] = field(default_factory=lambda: dict(CHANNEL_LABELS))
    customer_user_type: str = CUSTOMER_USER_TYPE
    payment_states: list[str] = field(default_factory=lambda: list(PAYMENT_STATES))
    source_lookback_days: int = SOURCE_LOOKBACK_DAYS
    correlation_window_days: int = CORRELATION_WINDOW_DAYS
    fee_type: str = FEE_TYPE
    reference_now: Optional[datetime] = None
    run_budget_seconds: Optional[float] = None

    def validate(self) -> "PipelineConfig":
        """Raise ConfigurationError on the first invalid setting. Returns self."""
        _require_str_list("campaign_allow_list", self.campaign_allow_list)
        if any(not c.strip() for c in self.campaign_allow_list):
            raise ConfigurationError("campaign_allow_list contains a blank campaign id")

        if not isinstance(self.channel_labels, dict):
            raise ConfigurationError("channel_labels must be a mapping of channel id -> label")
        if len(self.channel_labels) != 2:
            raise ConfigurationError(
                f"channel_labels must map exactly two channel ids, got {len(self.channel_labels)}"
            )
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in self.channel_labels.items()):
            raise ConfigurationError("channel_labels keys and labels must be strings")
        labels = set(self.channel_labels.values())
        if labels != set(TRACKED_CHANNELS):
            raise ConfigurationError(
                f"channel_labels must use the labels {sorted(TRACKED_CHANNELS)}, got {sorted(labels)}"
            )

        _require_str("customer_user_type", self.customer_user_type)
        _require_str_list("payment_states", self.payment_states)

        for name in ("source_lookback_days", "correlation_window_days"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.correlation_window_days > self.source_lookback_days:
            raise ConfigurationError(
                "correlation_window_days cannot exceed source_lookback_days "
                f"({self.correlation_window_days} > {self.source_lookback_days})"
            )

        _require_str("fee_type", self.fee_type)
        if self.reference_now is not None and not isinstance(self.reference_now, datetime):
            raise ConfigurationError(f"reference_now must be a datetime, got {self.reference_now!r}")
        if self.run_budget_seconds is not None:
            budget = self.run_budget_seconds
            if isinstance(budget, bool) or not isinstance(budget, (int, float)) or budget <= 0:
                raise ConfigurationError(f"run_budget_seconds must be a positive number, got {budget!r}")
        return self

    def resolve_now(self, fallback: datetime) -> datetime:
        """Reference timestamp for the run: the configured one, else `fallback`."""
        return self.reference_now if self.reference_now is not None else fallback


def load_config(path: str | Path) -> PipelineConfig:
    """Load a PipelineConfig from YAML and validate it."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with path.open() as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file {path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")

    if isinstance(raw.get("reference_now"), str):
        try:
            raw["reference_now"] = datetime.fromisoformat(raw["reference_now"])
        except ValueError as exc:
            raise ConfigurationError(f"reference_now is not an ISO timestamp: {raw['reference_now']}") from exc
    if "channel_labels" in raw and not isinstance(raw["channel_labels"], dict):
        raise ConfigurationError("channel_labels must be a mapping of channel id -> label")

    return PipelineConfig(**raw).validate()

"""
Source Filter: load raw snapshots, validate their columns, parse types and
apply the domain predicates (campaigns, channels, states, lookback window).

Rows with unparseable fields are excluded and counted, never fatal.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import polars as pl

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import (
    CLAIM_KEY,
    CLAIM_SCHEMA,
    PAYMENT_SCHEMA,
    PAYOUT_SCHEMA,
    RAW_DATA_DIR,
    RAW_SOURCE_SCHEMAS,
    REWARD_SCHEMA,
    TIMESTAMP_FORMATS,
)

NUMERIC_ID_PATTERN = r"^[0-9]+$"


@dataclass
class RawSources:
    claims: pl.DataFrame
    payments: pl.DataFrame
    reward_grants: pl.DataFrame
    promo_events: pl.DataFrame
    payouts: pl.DataFrame


@dataclass
class FilteredSources:
    claims: pl.DataFrame
    payments: pl.DataFrame
    rewards: pl.DataFrame
    payouts: pl.DataFrame


@dataclass
class ExclusionStats:
    """Rows dropped as malformed, keyed by (source, reason)."""

    counts: dict[tuple[str, str], int] = field(default_factory=dict)

    def add(self, source: str, reason: str, n: int) -> None:
        if n > 0:
            self.counts[(source, reason)] = self.counts.get((source, reason), 0) + n

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def for_source(self, source: str) -> int:
        return sum(n for (src, _), n in self.counts.items() if src == source)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_raw_sources(raw_dir: str = RAW_DATA_DIR) -> tuple[RawSources, bool]:
    """
    Load the five raw snapshots from `raw_dir`. Falls back to synthetic data
    when any snapshot is missing. Returns (sources, is_mock).
    """
    paths = {name: Path(raw_dir) / f"{name}.parquet" for name in RAW_SOURCE_SCHEMAS}
    if all(p.exists() for p in paths.values()):
        frames = {name: pl.read_parquet(p) for name, p in paths.items()}
        return RawSources(**frames), False

    from couponguard.data_generator.generate import generate_sources

    print(f"[ingest] snapshots not found under {raw_dir}, generating synthetic sources")
    return RawSources(**generate_sources()), True


def _validate_schema(df: pl.DataFrame, name: str) -> None:
    """Raise if a raw snapshot is missing any required column."""
    missing = [col for col in RAW_SOURCE_SCHEMAS[name] if col not in df.columns]
    if missing:
        raise ValueError(f"Source '{name}' is missing required columns: {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Type parsing
# ---------------------------------------------------------------------------

def _timestamp_expr(df: pl.DataFrame, col: str) -> pl.Expr:
    """Parse `col` to a naive Datetime("us"); unparseable values become null."""
    dtype = df.schema[col]
    if isinstance(dtype, pl.Datetime):
        expr = pl.col(col)
        # Compare everything in naive UTC
        if dtype.time_zone is not None:
            expr = expr.dt.convert_time_zone("UTC").dt.replace_time_zone(None)
        return expr.cast(pl.Datetime("us")).alias(col)
    if dtype == pl.Date:
        return pl.col(col).cast(pl.Datetime("us")).alias(col)
    if dtype == pl.Utf8:
        text = pl.col(col).str.strip_chars()
        return pl.coalesce([
            text.str.strptime(pl.Datetime("us"), fmt, strict=False) for fmt in TIMESTAMP_FORMATS
        ]).alias(col)
    return pl.col(col).cast(pl.Datetime("us"), strict=False).alias(col)


def _text_expr(col: str) -> pl.Expr:
    return pl.col(col).cast(pl.Utf8).str.strip_chars().alias(col)


def _float_expr(df: pl.DataFrame, col: str) -> pl.Expr:
    if df.schema[col].is_numeric():
        return pl.col(col).cast(pl.Float64).alias(col)
    return pl.col(col).cast(pl.Utf8).str.strip_chars().cast(pl.Float64, strict=False).alias(col)


def _drop_incomplete(
    df: pl.DataFrame, required: list[str], source: str, stats: ExclusionStats
) -> pl.DataFrame:
    """Exclude rows where any required (already parsed) field is null."""
    mask = pl.all_horizontal([pl.col(c).is_not_null() for c in required])
    kept = df.filter(mask)
    stats.add(source, "malformed", df.height - kept.height)
    return kept


def _drop_non_numeric(df: pl.DataFrame, col: str, source: str, stats: ExclusionStats) -> pl.DataFrame:
    """Keep rows whose `col` is strictly digits and fits an Int64; cast it."""
    kept = (
        df.filter(pl.col(col).str.contains(NUMERIC_ID_PATTERN))
        .with_columns(pl.col(col).cast(pl.Int64, strict=False))
        .filter(pl.col(col).is_not_null())
    )
    stats.add(source, f"non_numeric_{col}", df.height - kept.height)
    return kept


def _in_window(col: str, window_start: datetime, now: datetime) -> pl.Expr:
    return (pl.col(col) >= window_start) & (pl.col(col) <= now)


# ---------------------------------------------------------------------------
# Per-source filters
# ---------------------------------------------------------------------------

def filter_claims(raw: pl.DataFrame, config: PipelineConfig, stats: ExclusionStats) -> pl.DataFrame:
    _validate_schema(raw, "claims")
    df = raw.with_columns([
        _text_expr("customer_id"),
        _text_expr("coupon_campaign_id"),
        _timestamp_expr(raw, "claimed_at"),
        _float_expr(raw, "cashback_amount"),
    ])
    df = _drop_incomplete(df, CLAIM_KEY, "claims", stats)
    df = df.filter(pl.col("coupon_campaign_id").is_in(config.campaign_allow_list))

    # One claim per identity key
    deduped = df.unique(subset=CLAIM_KEY, keep="first", maintain_order=True)
    stats.add("claims", "duplicate_claim", df.height - deduped.height)
    return deduped.select(list(CLAIM_SCHEMA.keys()))


def filter_payments(
    raw: pl.DataFrame, config: PipelineConfig, now: datetime, stats: ExclusionStats
) -> pl.DataFrame:
    _validate_schema(raw, "payments")
    window_start = now - timedelta(days=config.source_lookback_days)
    df = raw.with_columns([
        _text_expr("customer_id"),
        _text_expr("user_type"),
        _text_expr("channel_id"),
        _text_expr("txn_id"),
        _text_expr("txn_state"),
        _timestamp_expr(raw, "paid_at"),
    ])
    df = _drop_incomplete(df, ["customer_id", "channel_id", "txn_id", "paid_at"], "payments", stats)
    df = (
        df.filter(
            (pl.col("user_type") == config.customer_user_type)
            & pl.col("txn_state").is_in(config.payment_states)
            & pl.col("channel_id").is_in(list(config.channel_labels.keys()))
            & _in_window("paid_at", window_start, now)
        )
        .with_columns(
            pl.col("channel_id").replace_strict(config.channel_labels, return_dtype=pl.Utf8).alias("channel")
        )
    )
    return df.select(list(PAYMENT_SCHEMA.keys()))


def filter_rewards(
    grants_raw: pl.DataFrame,
    events_raw: pl.DataFrame,
    config: PipelineConfig,
    now: datetime,
    stats: ExclusionStats,
) -> pl.DataFrame:
    """Join reward grants to promo events and keep numeric, in-window redemptions."""
    _validate_schema(grants_raw, "reward_grants")
    _validate_schema(events_raw, "promo_events")
    window_start = now - timedelta(days=config.source_lookback_days)

    grants = grants_raw.with_columns([
        _text_expr("campaign_id"),
        _text_expr("customer_id"),
        _text_expr("promo_event_id"),
        _timestamp_expr(grants_raw, "created_at"),
    ])
    grants = _drop_incomplete(grants, ["campaign_id", "customer_id", "promo_event_id", "created_at"],
                              "reward_grants", stats)
    grants = grants.filter(_in_window("created_at", window_start, now))

    events = events_raw.with_columns([
        _text_expr("event_id"),
        _text_expr("event_key"),
        _float_expr(events_raw, "txn_amount"),
        _timestamp_expr(events_raw, "created_at"),
    ])
    events = _drop_incomplete(events, ["event_id", "event_key", "created_at"], "promo_events", stats)
    events = events.filter(_in_window("created_at", window_start, now))
    events = _drop_non_numeric(events, "event_key", "promo_events", stats)

    rewards = grants.select(["campaign_id", "customer_id", "promo_event_id"]).join(
        events.select([
            "event_id",
            pl.col("event_key").alias("redemption_txn_id"),
            pl.col("txn_amount").alias("redemption_txn_amount"),
            pl.col("created_at").alias("redemption_time"),
        ]),
        left_on="promo_event_id",
        right_on="event_id",
        how="inner",
    )
    return rewards.select(list(REWARD_SCHEMA.keys()))


def filter_payouts(
    raw: pl.DataFrame, config: PipelineConfig, now: datetime, stats: ExclusionStats
) -> pl.DataFrame:
    _validate_schema(raw, "payouts")
    window_start = now - timedelta(days=config.source_lookback_days)
    df = raw.with_columns([
        _text_expr("order_id"),
        _timestamp_expr(raw, "created_at"),
        _float_expr(raw, "tax_rate"),
    ])
    df = _drop_incomplete(df, ["order_id", "created_at"], "payouts", stats)
    df = df.filter(_in_window("created_at", window_start, now))
    df = _drop_non_numeric(df, "order_id", "payouts", stats)
    return df.select(list(PAYOUT_SCHEMA.keys()))


def filter_sources(
    raw: RawSources, config: PipelineConfig, now: datetime
) -> tuple[FilteredSources, ExclusionStats]:
    """Apply every source predicate. `now` anchors the lookback window."""
    stats = ExclusionStats()
    filtered = FilteredSources(
        claims=filter_claims(raw.claims, config, stats),
        payments=filter_payments(raw.payments, config, now, stats),
        rewards=filter_rewards(raw.reward_grants, raw.promo_events, config, now, stats),
        payouts=filter_payouts(raw.payouts, config, now, stats),
    )
    print(
        f"[ingest] claims={filtered.claims.height:,} payments={filtered.payments.height:,} "
        f"rewards={filtered.rewards.height:,} payouts={filtered.payouts.height:,} "
        f"(excluded malformed: {stats.total:,})"
    )
    return filtered, stats

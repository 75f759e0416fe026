"""
Claim Summarizer: pivot the per-(claim, channel) ranking into one row per
claim with named previous-transaction columns for each channel.
"""

import polars as pl

from couponguard.contracts.schemas import (
    CHANNEL_COLUMN_PREFIX,
    CLAIM_KEY,
    CLAIM_SUMMARY_SCHEMA,
    TRACKED_CHANNELS,
)
from couponguard.pipeline.merge import merge_non_null

# ranked column -> summary column suffix
_PAYMENT_FIELDS = {"txn_id": "txn_id", "paid_at": "txn_time", "txn_state": "txn_state"}


def _channel_columns(channel: str) -> list[pl.Expr]:
    """Project one channel's payment fields; other channels' rows become null."""
    prefix = CHANNEL_COLUMN_PREFIX[channel]
    return [
        pl.when(pl.col("channel") == channel).then(pl.col(src)).otherwise(None)
          .alias(f"{prefix}_{suffix}")
        for src, suffix in _PAYMENT_FIELDS.items()
    ]


def summarize_claims(ranked: pl.DataFrame) -> pl.DataFrame:
    """
    Collapse RANKED_PAYMENT_SCHEMA rows to one row per claim, returning a
    DataFrame matching CLAIM_SUMMARY_SCHEMA. Each channel contributes at most
    one non-null value per claim, so the merge selects that value.
    """
    projected = ranked.with_columns(
        [expr for channel in TRACKED_CHANNELS for expr in _channel_columns(channel)]
    )
    value_cols = [c for c in CLAIM_SUMMARY_SCHEMA if c not in CLAIM_KEY]
    summary, n_conflicts = merge_non_null(projected, CLAIM_KEY, value_cols)
    # The correlator keeps one rank-1 payment per (claim, channel); a conflict here is a bug upstream
    if n_conflicts:
        raise ValueError(f"{n_conflicts} claims carry more than one ranked payment per channel")
    return summary.cast(CLAIM_SUMMARY_SCHEMA).select(list(CLAIM_SUMMARY_SCHEMA.keys()))

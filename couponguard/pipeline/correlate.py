"""
Temporal Correlator: for each (claim, channel) find the most recent prior
payment by the same customer inside the correlation window.
"""

from datetime import timedelta

import polars as pl

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import CLAIM_KEY, RANKED_PAYMENT_SCHEMA, TRACKED_CHANNELS

# Ranking partition: one ordered group of candidates per (claim, channel)
PARTITION_KEY = CLAIM_KEY + ["channel"]


def find_candidate_payments(
    claims: pl.DataFrame, payments: pl.DataFrame, config: PipelineConfig
) -> pl.DataFrame:
    """
    Every same-customer payment that precedes the claim by less than the
    correlation window: paid_at < claimed_at and paid_at >= claimed_at - window.
    """
    window = timedelta(days=config.correlation_window_days)
    return (
        claims.select(CLAIM_KEY)
        .join(payments, on="customer_id", how="inner")
        .filter(
            (pl.col("paid_at") < pl.col("claimed_at"))
            & (pl.col("paid_at") >= pl.col("claimed_at") - window)
        )
    )


def rank_candidates(candidates: pl.DataFrame) -> pl.DataFrame:
    """
    Rank candidates within each (claim, channel) partition by paid_at
    descending. Equal paid_at values are ordered by txn_id ascending so the
    rank is deterministic.
    """
    return (
        candidates
        .sort(PARTITION_KEY + ["paid_at", "txn_id"], descending=[False] * len(PARTITION_KEY) + [True, False])
        .with_columns((pl.int_range(pl.len()).over(PARTITION_KEY) + 1).cast(pl.Int64).alias("payment_rank"))
    )


def rank_prior_payments(
    claims: pl.DataFrame, payments: pl.DataFrame, config: PipelineConfig
) -> pl.DataFrame:
    """
    One row per (claim, tracked channel) holding the rank-1 prior payment,
    or null payment fields when the claim has no candidate on that channel.
    Returns a DataFrame matching RANKED_PAYMENT_SCHEMA.
    """
    ranked = rank_candidates(find_candidate_payments(claims, payments, config))
    most_recent = ranked.filter(pl.col("payment_rank") == 1).drop("payment_rank")

    # Left-outer: every claim gets a row for every tracked channel
    channels = pl.DataFrame({"channel": list(TRACKED_CHANNELS)}, schema={"channel": pl.Utf8})
    grid = claims.select(CLAIM_KEY).join(channels, how="cross")

    result = (
        grid.join(most_recent, on=PARTITION_KEY, how="left")
        .sort(PARTITION_KEY)
        .select(list(RANKED_PAYMENT_SCHEMA.keys()))
    )
    n_matched = result.filter(pl.col("txn_id").is_not_null()).height
    print(f"[correlate] {claims.height:,} claims x {len(TRACKED_CHANNELS)} channels -> "
          f"{n_matched:,} with a prior payment")
    return result

"""
Finalizer: merge correlated redemptions with fee summaries, deduplicate to
one row per (user, coupon, redemption transaction), derive totals and the
per-user sequence, and emit the ordered fraud report.
"""

from dataclasses import dataclass

import polars as pl

from couponguard.contracts.schemas import (
    CHANNEL_COLUMN_PREFIX,
    FRAUD_FLAG_SCHEMA,
    REPORT_SCHEMA,
    USER_STATUS_LABELS,
)
from couponguard.pipeline.merge import merge_non_null

REPORT_KEY = ["customer_id", "coupon_campaign_id", "redemption_txn_id"]

# Fields describing a single claim; never mixed across claims sharing a key
CLAIM_LEVEL_COLUMNS = [
    c for c in FRAUD_FLAG_SCHEMA if c not in REPORT_KEY
] + ["cashback_amount"]

_OUTPUT_NAMES = {
    "customer_id": "user_id",
    "coupon_campaign_id": "coupon_id",
    "cashback_amount": "final_redemption_amount",
    "claimed_at": "coupon_claimed_at",
}


@dataclass
class FinalizeStats:
    multi_tier_orders: int = 0
    merge_conflicts: int = 0


def _single_value(col: str) -> pl.Expr:
    """The group's value of `col` when exactly one distinct non-null value exists, else null."""
    values = pl.col(col).drop_nulls()
    return pl.when(values.n_unique() == 1).then(values.first()).otherwise(None).alias(col)


def collapse_fee_tiers(fee_summaries: pl.DataFrame) -> tuple[pl.DataFrame, int]:
    """
    One fee row per order_id. Amounts are summed across commission-rate
    tiers; tax_rate and commission_rate survive only when unambiguous.
    Returns (per_order_fees, n_orders_with_several_tiers).
    """
    per_order = fee_summaries.group_by("order_id", maintain_order=True).agg([
        pl.len().alias("n_tiers"),
        pl.col("fee_eligible_amount").sum(),
        pl.col("plc_fee").sum(),
        pl.col("plc_tax").sum(),
        _single_value("tax_rate"),
        _single_value("commission_rate"),
    ])
    n_multi_tier = per_order.filter(pl.col("n_tiers") > 1).height
    return per_order.drop("n_tiers"), n_multi_tier


def _user_status(channel: str) -> pl.Expr:
    existing, new = USER_STATUS_LABELS[channel]
    prefix = CHANNEL_COLUMN_PREFIX[channel]
    return (
        pl.when(pl.col(f"{prefix}_txn_id").is_not_null())
          .then(pl.lit(existing))
          .otherwise(pl.lit(new))
          .alias(f"{channel}_User_Status")
    )


def assign_user_sequence(df: pl.DataFrame) -> pl.DataFrame:
    """
    Number each user's rows 1..N by (claimed_at, redemption_time); equal
    timestamps fall back to (coupon_campaign_id, redemption_txn_id).
    """
    return (
        df.sort(["customer_id", "claimed_at", "redemption_time", "coupon_campaign_id", "redemption_txn_id"],
                nulls_last=True)
          .with_columns(
              (pl.int_range(pl.len()).over("customer_id") + 1)
              .cast(pl.Int64)
              .alias("transaction_sequence_by_user")
          )
    )


def finalize_report(
    correlated: pl.DataFrame, fee_summaries: pl.DataFrame
) -> tuple[pl.DataFrame, FinalizeStats]:
    """
    Build the fraud report from CORRELATED_REDEMPTION_SCHEMA rows and
    FEE_SUMMARY_SCHEMA rows. Returns (REPORT_SCHEMA frame ordered by
    user_id and sequence, FinalizeStats).
    """
    stats = FinalizeStats()
    fees, stats.multi_tier_orders = collapse_fee_tiers(fee_summaries)

    joined = correlated.join(fees, left_on="redemption_txn_id", right_on="order_id", how="left")

    # Within a key the earliest claim supplies every claim-level field
    ordered = joined.sort(REPORT_KEY + ["claimed_at"], nulls_last=True)
    value_cols = [c for c in joined.columns if c not in REPORT_KEY and c not in CLAIM_LEVEL_COLUMNS]
    merged, stats.merge_conflicts = merge_non_null(
        ordered, REPORT_KEY, value_cols, block=CLAIM_LEVEL_COLUMNS
    )

    report = (
        merged.with_columns([
            (pl.col("plc_fee").fill_null(0.0) + pl.col("plc_tax").fill_null(0.0)).alias("total_payout_cost"),
            _user_status("Delivery"),
            _user_status("MO"),
        ])
        .pipe(assign_user_sequence)
        .rename(_OUTPUT_NAMES)
        .sort(["user_id", "transaction_sequence_by_user"])
        .select(list(REPORT_SCHEMA.keys()))
        .cast(REPORT_SCHEMA)
    )

    print(f"[finalize] {correlated.height:,} redemption rows -> {report.height:,} report rows "
          f"for {report['user_id'].n_unique():,} users")
    if stats.multi_tier_orders:
        print(f"[finalize] {stats.multi_tier_orders:,} orders had several fee tiers (summed)")
    if stats.merge_conflicts:
        print(f"[finalize] WARNING: {stats.merge_conflicts:,} report keys merged rows with "
              f"disagreeing values (earliest claim kept whole)")
    return report, stats

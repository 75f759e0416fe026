"""
Fraud Classifier: keep claims with prior-transaction evidence and label the
channel(s) that triggered the flag.
"""

import polars as pl

from couponguard.contracts.schemas import BOTH_CHANNELS_LABEL, FRAUD_FLAG_SCHEMA


def classify_claims(summaries: pl.DataFrame) -> pl.DataFrame:
    """Return a DataFrame matching FRAUD_FLAG_SCHEMA, one row per flagged claim."""
    has_delivery = pl.col("previous_delivery_txn_id").is_not_null()
    has_mo = pl.col("previous_mo_txn_id").is_not_null()

    channel_label = (
        pl.when(has_delivery & has_mo).then(pl.lit(BOTH_CHANNELS_LABEL))
          .when(has_delivery).then(pl.lit("Delivery"))
          .otherwise(pl.lit("MO"))
          .alias("incorrectly_claimed_channel")
    )
    flags = (
        summaries
        .filter(has_delivery | has_mo)
        .with_columns(channel_label)
        .select(list(FRAUD_FLAG_SCHEMA.keys()))
    )
    print(f"[classify] {flags.height:,} of {summaries.height:,} claims flagged")
    return flags

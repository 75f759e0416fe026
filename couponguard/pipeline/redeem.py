"""
Redemption Correlator: attach realised reward redemptions to flagged claims.
"""

import polars as pl

from couponguard.contracts.schemas import CLAIM_KEY, CORRELATED_REDEMPTION_SCHEMA


def correlate_redemptions(
    flags: pl.DataFrame, claims: pl.DataFrame, rewards: pl.DataFrame
) -> pl.DataFrame:
    """
    Re-join each flag to its original claim, then inner-join rewards on
    (campaign_id, customer_id). A flag may fan out to several redemptions;
    flags with no redemption are dropped.

    Returns a DataFrame matching CORRELATED_REDEMPTION_SCHEMA.
    """
    flagged_claims = flags.join(
        claims.select(CLAIM_KEY + ["cashback_amount"]), on=CLAIM_KEY, how="inner"
    )
    correlated = (
        flagged_claims.join(
            rewards,
            left_on=["coupon_campaign_id", "customer_id"],
            right_on=["campaign_id", "customer_id"],
            how="inner",
        )
        .select(list(CORRELATED_REDEMPTION_SCHEMA.keys()))
    )
    n_claims = correlated.select(CLAIM_KEY).unique().height
    print(f"[redeem] {n_claims:,} of {flags.height:,} flagged claims redeemed "
          f"-> {correlated.height:,} redemption rows")
    return correlated

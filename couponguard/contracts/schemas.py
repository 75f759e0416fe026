"""
Data contracts for the CouponGuard new-user coupon abuse pipeline.

These schemas are the single source of truth for every stage.

Layer flow: raw snapshots -> filtered sources -> correlation layers -> fraud report
"""

import polars as pl


# =============================================================================
# LAYER 1: Raw snapshots (storage layer -> data/raw/*.parquet)
# =============================================================================

RAW_CLAIM_SCHEMA = {
    "customer_id": pl.Utf8,
    "coupon_campaign_id": pl.Utf8,
    "claimed_at": pl.Utf8,              # text timestamp; datetime columns are accepted too
    "cashback_amount": pl.Float64,
}

RAW_PAYMENT_SCHEMA = {
    "customer_id": pl.Utf8,
    "user_type": pl.Utf8,              # only CUSTOMER rows are kept
    "channel_id": pl.Utf8,             # merchant / channel identifier
    "txn_id": pl.Utf8,
    "paid_at": pl.Utf8,
    "txn_state": pl.Utf8,              # COMPLETED, AUTHORIZED, FAILED, ...
}

RAW_REWARD_GRANT_SCHEMA = {
    "grant_id": pl.Utf8,
    "campaign_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "promo_event_id": pl.Utf8,         # FK -> promo_events.event_id
    "created_at": pl.Utf8,
}

RAW_PROMO_EVENT_SCHEMA = {
    "event_id": pl.Utf8,
    "event_key": pl.Utf8,              # redemption txn id, must be digits only
    "txn_amount": pl.Float64,
    "created_at": pl.Utf8,
}

FEE_ENTRY_SCHEMA = {
    "fee_type": pl.Utf8,
    "commission_rate": pl.Float64,
    "fee_eligible_amount": pl.Float64,
    "commission_amount": pl.Float64,
    "tax_amount": pl.Float64,
}

FEE_ENTRY_DTYPE = pl.Struct(FEE_ENTRY_SCHEMA)

RAW_PAYOUT_SCHEMA = {
    "order_id": pl.Utf8,
    "created_at": pl.Utf8,
    "tax_rate": pl.Float64,
    "fee_details": pl.Utf8,            # JSON array of fee entries (or List(FEE_ENTRY_DTYPE))
}

RAW_SOURCE_SCHEMAS = {
    "claims": RAW_CLAIM_SCHEMA,
    "payments": RAW_PAYMENT_SCHEMA,
    "reward_grants": RAW_REWARD_GRANT_SCHEMA,
    "promo_events": RAW_PROMO_EVENT_SCHEMA,
    "payouts": RAW_PAYOUT_SCHEMA,
}

RAW_DATA_DIR = "data/raw"


# =============================================================================
# LAYER 2: Filtered sources (Source Filter -> correlation stages)
# =============================================================================

CLAIM_SCHEMA = {
    "customer_id": pl.Utf8,
    "coupon_campaign_id": pl.Utf8,
    "claimed_at": pl.Datetime("us"),
    "cashback_amount": pl.Float64,
}

PAYMENT_SCHEMA = {
    "customer_id": pl.Utf8,
    "channel": pl.Utf8,                # channel label: Delivery, MO
    "txn_id": pl.Utf8,
    "paid_at": pl.Datetime("us"),
    "txn_state": pl.Utf8,
}

REWARD_SCHEMA = {
    "campaign_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "redemption_txn_id": pl.Int64,
    "redemption_txn_amount": pl.Float64,
    "redemption_time": pl.Datetime("us"),
}

PAYOUT_SCHEMA = {
    "order_id": pl.Int64,
    "created_at": pl.Datetime("us"),
    "tax_rate": pl.Float64,
    "fee_details": pl.Utf8,            # still unparsed; decoded by the fee extractor
}

# Natural key of a coupon claim
CLAIM_KEY = ["customer_id", "coupon_campaign_id", "claimed_at"]


# =============================================================================
# LAYER 3: Correlation layers
# =============================================================================

# One row per (claim, channel), rank-1 prior payment or nulls
RANKED_PAYMENT_SCHEMA = {
    "customer_id": pl.Utf8,
    "coupon_campaign_id": pl.Utf8,
    "claimed_at": pl.Datetime("us"),
    "channel": pl.Utf8,
    "txn_id": pl.Utf8,
    "paid_at": pl.Datetime("us"),
    "txn_state": pl.Utf8,
}

CLAIM_SUMMARY_SCHEMA = {
    "customer_id": pl.Utf8,
    "coupon_campaign_id": pl.Utf8,
    "claimed_at": pl.Datetime("us"),
    "previous_delivery_txn_id": pl.Utf8,
    "previous_delivery_txn_time": pl.Datetime("us"),
    "previous_delivery_txn_state": pl.Utf8,
    "previous_mo_txn_id": pl.Utf8,
    "previous_mo_txn_time": pl.Datetime("us"),
    "previous_mo_txn_state": pl.Utf8,
}

FRAUD_FLAG_SCHEMA = {
    **CLAIM_SUMMARY_SCHEMA,
    "incorrectly_claimed_channel": pl.Utf8,   # Delivery, MO, Both Channels
}

CORRELATED_REDEMPTION_SCHEMA = {
    **FRAUD_FLAG_SCHEMA,
    "cashback_amount": pl.Float64,
    "redemption_txn_id": pl.Int64,
    "redemption_txn_amount": pl.Float64,
    "redemption_time": pl.Datetime("us"),
}

FEE_SUMMARY_SCHEMA = {
    "order_id": pl.Int64,
    "tax_rate": pl.Float64,
    "commission_rate": pl.Float64,
    "fee_eligible_amount": pl.Float64,
    "plc_fee": pl.Float64,
    "plc_tax": pl.Float64,
}


# =============================================================================
# LAYER 4: Fraud report (Finalizer -> data/processed/)
# =============================================================================

REPORT_SCHEMA = {
    "user_id": pl.Utf8,
    "transaction_sequence_by_user": pl.Int64,
    "coupon_id": pl.Utf8,
    "final_redemption_amount": pl.Float64,
    "coupon_claimed_at": pl.Datetime("us"),
    "incorrectly_claimed_channel": pl.Utf8,
    "Delivery_User_Status": pl.Utf8,
    "MO_User_Status": pl.Utf8,
    "previous_delivery_txn_id": pl.Utf8,
    "previous_delivery_txn_time": pl.Datetime("us"),
    "previous_delivery_txn_state": pl.Utf8,
    "previous_mo_txn_id": pl.Utf8,
    "previous_mo_txn_time": pl.Datetime("us"),
    "previous_mo_txn_state": pl.Utf8,
    "redemption_txn_id": pl.Int64,
    "redemption_txn_amount": pl.Float64,
    "redemption_time": pl.Datetime("us"),
    "fee_eligible_amount": pl.Float64,
    "tax_rate": pl.Float64,
    "commission_rate": pl.Float64,
    "plc_fee": pl.Float64,
    "plc_tax": pl.Float64,
    "total_payout_cost": pl.Float64,
}

REPORT_OUTPUT_PATH = "data/processed/fraud_report.parquet"
REPORT_CSV_PATH = "data/processed/fraud_report.csv"


# =============================================================================
# CONSTANTS (defaults for PipelineConfig)
# =============================================================================

CAMPAIGN_ALLOW_LIST = ["NU-CB-2301", "NU-CB-2302", "NU-CB-2303"]

# channel_id -> channel label; exactly these two labels are tracked
CHANNEL_LABELS = {"MERCHANT_DELIVERY": "Delivery", "MERCHANT_MO": "MO"}
TRACKED_CHANNELS = ("Delivery", "MO")

# Prefix used for the per-channel summary columns
CHANNEL_COLUMN_PREFIX = {"Delivery": "previous_delivery", "MO": "previous_mo"}

BOTH_CHANNELS_LABEL = "Both Channels"

USER_STATUS_LABELS = {
    "Delivery": ("Existing Delivery User", "New Delivery User"),
    "MO": ("Existing MO User", "New MO User"),
}

CUSTOMER_USER_TYPE = "CUSTOMER"
PAYMENT_STATES = ["COMPLETED", "AUTHORIZED"]

SOURCE_LOOKBACK_DAYS = 900
CORRELATION_WINDOW_DAYS = 365

FEE_TYPE = "PLC"

# Text timestamps are tried against these formats in order
TIMESTAMP_FORMATS = [
    "%Y-%m-%d %H:%M:%S%.f",
    "%Y-%m-%dT%H:%M:%S%.f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
]

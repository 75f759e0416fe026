"""
Fee Extractor: expand each payout's nested fee breakdown, keep the fee type
of interest (PLC) and re-aggregate to one summary per
(order_id, tax_rate, commission_rate).

A payload that is not a list of fee entries is a schema mismatch: the payout
is treated as carrying no fee entries and the mismatch is counted.

Payloads are decoded row by row with json rather than with
`str.json_decode`, which fails the whole column on the first bad payload
and cannot report which rows mismatched.
"""

from __future__ import annotations

import json
from typing import Optional

import polars as pl

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import FEE_ENTRY_DTYPE, FEE_ENTRY_SCHEMA, FEE_SUMMARY_SCHEMA

_NUMERIC_FIELDS = [name for name, dtype in FEE_ENTRY_SCHEMA.items() if dtype == pl.Float64]


def _to_float(value) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("boolean is not a fee amount")
    return float(value)


def parse_fee_payload(payload) -> Optional[list[dict]]:
    """
    Normalise one payout's fee payload (JSON text or list of dicts) into a
    list of fee entries. Returns [] when there is no payload and None when
    the payload does not have the expected structure.
    """
    if payload is None:
        return []
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return None
    if not isinstance(payload, list):
        return None

    entries = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("fee_type"), str):
            return None
        try:
            entry = {name: _to_float(item.get(name)) for name in _NUMERIC_FIELDS}
        except (TypeError, ValueError):
            return None
        entry["fee_type"] = item["fee_type"]
        entries.append(entry)
    return entries


def explode_fee_entries(payouts: pl.DataFrame) -> tuple[pl.DataFrame, int]:
    """
    One row per fee entry, with the payout's order_id and tax_rate.
    Payouts with an empty (or mismatched) payload contribute no rows.
    Returns (entries, n_schema_mismatches).
    """
    parsed = [parse_fee_payload(p) for p in payouts["fee_details"].to_list()]
    n_mismatch = sum(1 for entries in parsed if entries is None)

    fee_entries = pl.Series("fee_entry", [entries or [] for entries in parsed],
                            dtype=pl.List(FEE_ENTRY_DTYPE))
    exploded = (
        payouts.select(["order_id", "tax_rate"])
        .with_columns(fee_entries)
        .explode("fee_entry")
        .filter(pl.col("fee_entry").is_not_null())
        .unnest("fee_entry")
    )
    return exploded, n_mismatch


def summarize_fees(entries: pl.DataFrame, fee_type: str) -> pl.DataFrame:
    """
    Sum the `fee_type` entries per (order_id, tax_rate, commission_rate).
    Distinct commission rates of one order stay on separate rows.
    """
    return (
        entries
        .filter(pl.col("fee_type") == fee_type)
        .group_by(["order_id", "tax_rate", "commission_rate"], maintain_order=True)
        .agg([
            pl.col("fee_eligible_amount").sum(),
            pl.col("commission_amount").sum().alias("plc_fee"),
            pl.col("tax_amount").sum().alias("plc_tax"),
        ])
        .cast(FEE_SUMMARY_SCHEMA)
        .sort(["order_id", "commission_rate"], nulls_last=True)
        .select(list(FEE_SUMMARY_SCHEMA.keys()))
    )


def extract_fees(
    payouts: pl.DataFrame, redemption_txn_ids: pl.Series, config: PipelineConfig
) -> tuple[pl.DataFrame, int]:
    """
    Fee summaries for the payouts whose order_id is one of the correlated
    redemption transactions. Returns (FEE_SUMMARY_SCHEMA frame, n_schema_mismatches).
    """
    order_ids = redemption_txn_ids.drop_nulls().unique().to_list()
    relevant = payouts.filter(pl.col("order_id").is_in(order_ids)) if order_ids else payouts.clear()
    entries, n_mismatch = explode_fee_entries(relevant)
    summary = summarize_fees(entries, config.fee_type)

    print(f"[fees] {relevant.height:,} payouts -> {entries.height:,} fee entries "
          f"-> {summary.height:,} {config.fee_type} summaries")
    if n_mismatch:
        print(f"[fees] {n_mismatch:,} payouts had an unreadable fee payload (treated as no fees)")
    return summary, n_mismatch

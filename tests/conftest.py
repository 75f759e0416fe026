"""Shared builders for raw snapshot rows."""

import json
from datetime import datetime, timedelta

import polars as pl
import pytest

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import RAW_SOURCE_SCHEMAS
from couponguard.pipeline.ingest import RawSources

NOW = datetime(2026, 3, 1)
T0 = datetime(2026, 1, 15, 12, 0, 0)

DELIVERY_ID = "MERCHANT_DELIVERY"
MO_ID = "MERCHANT_MO"


def ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


def days_before(days: float, anchor: datetime = T0) -> datetime:
    return anchor - timedelta(days=days)


def claim(customer="C1", campaign="NU-CB-2301", at=T0, cashback=10.0) -> dict:
    return {
        "customer_id": customer,
        "coupon_campaign_id": campaign,
        "claimed_at": ts(at) if isinstance(at, datetime) else at,
        "cashback_amount": cashback,
    }


def payment(customer="C1", channel_id=DELIVERY_ID, txn_id="T1", at=None,
            state="COMPLETED", user_type="CUSTOMER") -> dict:
    at = at if at is not None else days_before(10)
    return {
        "customer_id": customer,
        "user_type": user_type,
        "channel_id": channel_id,
        "txn_id": txn_id,
        "paid_at": ts(at) if isinstance(at, datetime) else at,
        "txn_state": state,
    }


def redemption(customer="C1", campaign="NU-CB-2301", event_key="9001",
               at=None, amount=100.0, event_id=None) -> tuple[dict, dict]:
    """A (reward_grant, promo_event) pair linked by event id."""
    at = at if at is not None else T0 + timedelta(days=1)
    event_id = event_id or f"E-{event_key}"
    grant = {
        "grant_id": f"G-{event_id}",
        "campaign_id": campaign,
        "customer_id": customer,
        "promo_event_id": event_id,
        "created_at": ts(at),
    }
    event = {
        "event_id": event_id,
        "event_key": event_key,
        "txn_amount": amount,
        "created_at": ts(at),
    }
    return grant, event


def plc(rate=0.02, eligible=100.0, fee=2.0, tax=0.22, fee_type="PLC") -> dict:
    return {
        "fee_type": fee_type,
        "commission_rate": rate,
        "fee_eligible_amount": eligible,
        "commission_amount": fee,
        "tax_amount": tax,
    }


def payout(order_id="9001", entries=None, at=None, tax_rate=0.11) -> dict:
    at = at if at is not None else T0 + timedelta(days=1, hours=2)
    details = entries if isinstance(entries, str) else json.dumps(entries or [])
    return {
        "order_id": order_id,
        "created_at": ts(at),
        "tax_rate": tax_rate,
        "fee_details": details,
    }


def make_raw(claims=(), payments=(), redemptions=(), payouts=()) -> RawSources:
    grants = [g for g, _ in redemptions]
    events = [e for _, e in redemptions]
    rows = {
        "claims": list(claims),
        "payments": list(payments),
        "reward_grants": grants,
        "promo_events": events,
        "payouts": list(payouts),
    }
    return RawSources(**{
        name: pl.DataFrame(rows[name], schema=schema) for name, schema in RAW_SOURCE_SCHEMAS.items()
    })


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig().validate()

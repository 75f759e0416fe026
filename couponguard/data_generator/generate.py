"""
Synthetic raw snapshot generator.

Generates the five raw sources for ~400 customers with embedded cases:
  1. Genuine new users (no prior Delivery / MO payments)
  2. Existing Delivery users, existing MO users, and users on both channels
  3. Prior payments outside the 365-day correlation window
  4. Noise the Source Filter must drop: failed payments, merchant accounts,
     non-allow-listed campaigns, non-numeric event keys, bad timestamps
  5. Payout fee payloads with one PLC tier, two tiers, no fees, and garbage

Usage:
    python -m couponguard.data_generator.generate
"""

import json
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import polars as pl

from couponguard.contracts.schemas import (
    CAMPAIGN_ALLOW_LIST,
    CHANNEL_LABELS,
    RAW_DATA_DIR,
    RAW_SOURCE_SCHEMAS,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
SEED = 42
N_CUSTOMERS = 400
REFERENCE_NOW = datetime(2026, 3, 1)

# Customer profile -> weight
PROFILES = {"new": 0.40, "delivery": 0.25, "mo": 0.20, "both": 0.15}

OTHER_CAMPAIGNS = ["REF-CB-2301", "LOYALTY-2302"]
CHANNEL_IDS = {label: channel_id for channel_id, label in CHANNEL_LABELS.items()}
OTHER_CHANNEL_ID = "MERCHANT_TRAVEL"

TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def _ts(value: datetime) -> str:
    return value.strftime(TS_FORMAT)


class _Generator:
    def __init__(self, seed: int, now: datetime):
        self.rng = np.random.default_rng(seed=seed)
        self.now = now
        self.claims: list[dict] = []
        self.payments: list[dict] = []
        self.grants: list[dict] = []
        self.events: list[dict] = []
        self.payouts: list[dict] = []
        self._txn_seq = 0
        self._event_seq = 0
        self._order_key = 7_000_000

    def _chance(self, p: float) -> bool:
        return bool(self.rng.random() < p)

    def _days(self, low: float, high: float) -> timedelta:
        return timedelta(days=float(self.rng.uniform(low, high)), seconds=int(self.rng.integers(0, 3600)))

    # -- payments ---------------------------------------------------------

    def _payment(self, customer_id: str, channel_id: str, paid_at: datetime,
                 state: str = "COMPLETED", user_type: str = "CUSTOMER") -> None:
        self._txn_seq += 1
        self.payments.append({
            "customer_id": customer_id,
            "user_type": user_type,
            "channel_id": channel_id,
            "txn_id": f"T{self._txn_seq:08d}",
            "paid_at": _ts(paid_at),
            "txn_state": state,
        })

    def _prior_history(self, customer_id: str, channel: str, first_claim: datetime) -> None:
        channel_id = CHANNEL_IDS[channel]
        for _ in range(int(self.rng.integers(1, 5))):
            state = "COMPLETED" if self._chance(0.8) else "AUTHORIZED"
            self._payment(customer_id, channel_id, first_claim - self._days(1, 360), state)
        # Older history that falls outside the correlation window
        if self._chance(0.3):
            self._payment(customer_id, channel_id, first_claim - self._days(400, 700))
        if self._chance(0.2):
            self._payment(customer_id, channel_id, first_claim - self._days(1, 200), state="FAILED")

    def _noise_payments(self, customer_id: str, first_claim: datetime) -> None:
        if self._chance(0.3):
            # Too old to be evidence
            self._payment(customer_id, CHANNEL_IDS["Delivery"], first_claim - self._days(370, 800))
        if self._chance(0.3):
            # After the claim: normal new-user behaviour
            self._payment(customer_id, CHANNEL_IDS["MO"], first_claim + self._days(1, 30))
        if self._chance(0.2):
            self._payment(customer_id, OTHER_CHANNEL_ID, first_claim - self._days(1, 100))
        if self._chance(0.1):
            self._payment(customer_id, CHANNEL_IDS["Delivery"], first_claim - self._days(1, 100),
                          user_type="MERCHANT")

    # -- rewards & payouts -------------------------------------------------

    def _fee_payload(self, eligible: float) -> str:
        roll = self.rng.random()
        if roll < 0.03:
            return "{not valid json"
        if roll < 0.07:
            return "[]"

        base_rate = float(self.rng.choice([0.015, 0.02, 0.025]))
        entries = [{
            "fee_type": "MDR",
            "commission_rate": 0.007,
            "fee_eligible_amount": eligible,
            "commission_amount": round(eligible * 0.007, 2),
            "tax_amount": round(eligible * 0.007 * 0.11, 2),
        }]
        tiers = [(base_rate, eligible)]
        if roll < 0.17:
            # Same commission rate split across two entries
            tiers = [(base_rate, round(eligible * 0.6, 2)), (base_rate, round(eligible * 0.4, 2))]
        elif roll < 0.27:
            tiers = [(base_rate, round(eligible * 0.7, 2)), (base_rate + 0.01, round(eligible * 0.3, 2))]
        for rate, amount in tiers:
            fee = round(amount * rate, 2)
            entries.append({
                "fee_type": "PLC",
                "commission_rate": rate,
                "fee_eligible_amount": amount,
                "commission_amount": fee,
                "tax_amount": round(fee * 0.11, 2),
            })
        return json.dumps(entries)

    def _redemption(self, customer_id: str, campaign_id: str, claimed_at: datetime) -> None:
        self._event_seq += 1
        self._order_key += int(self.rng.integers(1, 50))
        event_id = f"E{self._event_seq:07d}"
        event_key = str(self._order_key) if self._chance(0.97) else f"PROMO-{self._order_key}"
        redeemed_at = claimed_at + self._days(0, 20)
        amount = round(float(self.rng.uniform(20, 400)), 2)

        self.grants.append({
            "grant_id": f"G{self._event_seq:07d}",
            "campaign_id": campaign_id,
            "customer_id": customer_id,
            "promo_event_id": event_id,
            "created_at": _ts(redeemed_at),
        })
        self.events.append({
            "event_id": event_id,
            "event_key": event_key,
            "txn_amount": amount,
            "created_at": _ts(redeemed_at) if self._chance(0.99) else "not-a-timestamp",
        })
        if self._chance(0.95):
            self.payouts.append({
                "order_id": event_key,
                "created_at": _ts(redeemed_at + timedelta(hours=2)),
                "tax_rate": 0.11,
                "fee_details": self._fee_payload(amount),
            })

    # -- customers -----------------------------------------------------------

    def customer(self, idx: int) -> None:
        customer_id = f"C{idx:05d}"
        profile = str(self.rng.choice(list(PROFILES), p=list(PROFILES.values())))

        n_claims = int(self.rng.integers(1, 3))
        campaigns = self.rng.choice(CAMPAIGN_ALLOW_LIST, size=n_claims, replace=False)
        claim_times = sorted(self.now - self._days(10, 300) for _ in range(n_claims))

        if profile in ("delivery", "both"):
            self._prior_history(customer_id, "Delivery", claim_times[0])
        if profile in ("mo", "both"):
            self._prior_history(customer_id, "MO", claim_times[0])
        self._noise_payments(customer_id, claim_times[0])

        for campaign_id, claimed_at in zip(campaigns, claim_times):
            cashback = float(self.rng.choice([5.0, 10.0, 15.0]))
            claimed_text = _ts(claimed_at) if self._chance(0.99) else "2026-13-45 99:99:99"
            self.claims.append({
                "customer_id": customer_id,
                "coupon_campaign_id": str(campaign_id),
                "claimed_at": claimed_text,
                "cashback_amount": cashback,
            })
            if self._chance(0.8):
                for _ in range(int(self.rng.integers(1, 3))):
                    self._redemption(customer_id, str(campaign_id), claimed_at)

        if self._chance(0.05):
            self.claims.append({
                "customer_id": customer_id,
                "coupon_campaign_id": str(self.rng.choice(OTHER_CAMPAIGNS)),
                "claimed_at": _ts(self.now - self._days(10, 300)),
                "cashback_amount": 5.0,
            })

    def frames(self) -> dict[str, pl.DataFrame]:
        rows = {
            "claims": self.claims,
            "payments": self.payments,
            "reward_grants": self.grants,
            "promo_events": self.events,
            "payouts": self.payouts,
        }
        return {name: pl.DataFrame(rows[name], schema=schema) for name, schema in RAW_SOURCE_SCHEMAS.items()}


def generate_sources(
    n_customers: int = N_CUSTOMERS, seed: int = SEED, now: datetime = REFERENCE_NOW
) -> dict[str, pl.DataFrame]:
    """Return {source name: raw DataFrame} matching RAW_SOURCE_SCHEMAS."""
    gen = _Generator(seed, now)
    for idx in range(1, n_customers + 1):
        gen.customer(idx)
    return gen.frames()


def print_summary(frames: dict[str, pl.DataFrame]) -> None:
    print("=" * 60)
    for name, df in frames.items():
        print(f"  {name:<14} {df.height:>7,} rows")
    claims = frames["claims"]
    print(f"  customers      {claims['customer_id'].n_unique():>7,}")
    print("=" * 60)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(raw_dir: str = RAW_DATA_DIR) -> None:
    print("Generating synthetic raw snapshots...")
    frames = generate_sources()
    print_summary(frames)

    Path(raw_dir).mkdir(parents=True, exist_ok=True)
    for name, df in frames.items():
        path = Path(raw_dir) / f"{name}.parquet"
        df.write_parquet(path)
        print(f"Saved {df.height:,} rows -> {path}")


if __name__ == "__main__":
    main()

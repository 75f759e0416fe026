"""
Tests for the Redemption Correlator, the Finalizer and full pipeline runs.
"""

from datetime import timedelta

import polars as pl
import pytest

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import (
    CORRELATED_REDEMPTION_SCHEMA,
    FEE_SUMMARY_SCHEMA,
    REPORT_SCHEMA,
)
from couponguard.data_generator.generate import REFERENCE_NOW, generate_sources
from couponguard.pipeline.finalize import collapse_fee_tiers, finalize_report
from couponguard.pipeline.ingest import RawSources
from couponguard.pipeline.run import RunBudgetExceeded, run_pipeline, write_report

from conftest import (
    MO_ID,
    NOW,
    T0,
    claim,
    days_before,
    make_raw,
    payment,
    payout,
    plc,
    redemption,
)

REPORT_KEY = ["user_id", "coupon_id", "redemption_txn_id"]


def _run(config, **sources):
    return run_pipeline(make_raw(**sources), config, NOW)


def _correlated_row(**overrides) -> dict:
    row = {
        "customer_id": "C1",
        "coupon_campaign_id": "NU-CB-2301",
        "claimed_at": T0,
        "previous_delivery_txn_id": None,
        "previous_delivery_txn_time": None,
        "previous_delivery_txn_state": None,
        "previous_mo_txn_id": None,
        "previous_mo_txn_time": None,
        "previous_mo_txn_state": None,
        "incorrectly_claimed_channel": None,
        "cashback_amount": 10.0,
        "redemption_txn_id": 9001,
        "redemption_txn_amount": 100.0,
        "redemption_time": T0 + timedelta(days=1),
    }
    row.update(overrides)
    return row


def _correlated(*rows) -> pl.DataFrame:
    return pl.DataFrame(list(rows), schema=CORRELATED_REDEMPTION_SCHEMA)


def _fee_summaries(*rows) -> pl.DataFrame:
    return pl.DataFrame(list(rows), schema=FEE_SUMMARY_SCHEMA)


class TestRedemptionCorrelator:

    def test_fan_out_per_redemption(self, config):
        report, stats = _run(
            config,
            claims=[claim()],
            payments=[payment()],
            redemptions=[redemption(event_key="9001"), redemption(event_key="9002")],
        )
        assert report["redemption_txn_id"].to_list() == [9001, 9002]
        assert stats.redemption_rows == 2

    def test_unredeemed_flag_dropped(self, config):
        report, stats = _run(config, claims=[claim()], payments=[payment()])
        assert stats.flagged_claims == 1
        assert report.height == 0

    def test_redemption_for_other_campaign_not_matched(self, config):
        report, _ = _run(
            config,
            claims=[claim(campaign="NU-CB-2301")],
            payments=[payment()],
            redemptions=[redemption(campaign="NU-CB-2302")],
        )
        assert report.height == 0


class TestFinalizer:

    def test_new_user_row_without_fees(self):
        report, _ = finalize_report(_correlated(_correlated_row()), _fee_summaries())
        row = report.row(0, named=True)
        assert row["Delivery_User_Status"] == "New Delivery User"
        assert row["MO_User_Status"] == "New MO User"
        for col in ("previous_delivery_txn_id", "previous_mo_txn_time", "plc_fee", "plc_tax",
                    "tax_rate", "commission_rate", "fee_eligible_amount"):
            assert row[col] is None
        assert row["total_payout_cost"] == 0.0

    def test_total_payout_cost(self):
        fees = _fee_summaries({"order_id": 9001, "tax_rate": 0.11, "commission_rate": 0.02,
                               "fee_eligible_amount": 100.0, "plc_fee": 2.0, "plc_tax": 0.22})
        report, _ = finalize_report(_correlated(_correlated_row(previous_mo_txn_id="m1")), fees)
        row = report.row(0, named=True)
        assert row["total_payout_cost"] == pytest.approx(2.22)
        assert row["MO_User_Status"] == "Existing MO User"
        assert row["Delivery_User_Status"] == "New Delivery User"

    def test_fee_tax_only(self):
        fees = _fee_summaries({"order_id": 9001, "tax_rate": 0.11, "commission_rate": 0.02,
                               "fee_eligible_amount": 100.0, "plc_fee": None, "plc_tax": 0.5})
        report, _ = finalize_report(_correlated(_correlated_row()), fees)
        assert report["total_payout_cost"].to_list() == [0.5]

    def test_multiple_fee_tiers_collapse_to_one_row(self):
        fees = _fee_summaries(
            {"order_id": 9001, "tax_rate": 0.11, "commission_rate": 0.02,
             "fee_eligible_amount": 70.0, "plc_fee": 1.4, "plc_tax": 0.15},
            {"order_id": 9001, "tax_rate": 0.11, "commission_rate": 0.03,
             "fee_eligible_amount": 30.0, "plc_fee": 0.9, "plc_tax": 0.10},
        )
        report, stats = finalize_report(_correlated(_correlated_row()), fees)
        assert report.height == 1
        row = report.row(0, named=True)
        assert row["plc_fee"] == pytest.approx(2.3)
        assert row["plc_tax"] == pytest.approx(0.25)
        assert row["fee_eligible_amount"] == pytest.approx(100.0)
        assert row["tax_rate"] == 0.11
        assert row["commission_rate"] is None
        assert row["total_payout_cost"] == pytest.approx(2.55)
        assert stats.multi_tier_orders == 1

    def test_collapse_fee_tiers_single_tier(self):
        fees = _fee_summaries({"order_id": 1, "tax_rate": 0.12, "commission_rate": 0.02,
                               "fee_eligible_amount": 10.0, "plc_fee": 0.2, "plc_tax": 0.02})
        per_order, n_multi = collapse_fee_tiers(fees)
        assert n_multi == 0
        assert per_order.row(0, named=True)["commission_rate"] == 0.02

    def test_duplicate_rows_merge_to_one(self):
        row = _correlated_row(previous_delivery_txn_id="d1")
        report, stats = finalize_report(_correlated(row, row), _fee_summaries())
        assert report.height == 1
        assert stats.merge_conflicts == 0

    def test_earliest_claim_kept_whole_on_conflict(self):
        # Same customer claimed the campaign twice; both claims matched the same redemption
        first = _correlated_row(claimed_at=T0 - timedelta(days=3), previous_delivery_txn_id="d1",
                                incorrectly_claimed_channel="Delivery", cashback_amount=10.0)
        second = _correlated_row(claimed_at=T0, previous_mo_txn_id="m1",
                                 incorrectly_claimed_channel="MO", cashback_amount=12.0)
        report, stats = finalize_report(_correlated(second, first), _fee_summaries())
        assert report.height == 1
        row = report.row(0, named=True)
        assert row["coupon_claimed_at"] == T0 - timedelta(days=3)
        assert row["incorrectly_claimed_channel"] == "Delivery"
        assert row["previous_delivery_txn_id"] == "d1"
        assert row["previous_mo_txn_id"] is None
        assert row["MO_User_Status"] == "New MO User"
        assert row["final_redemption_amount"] == 10.0
        assert stats.merge_conflicts == 1

    def test_redemption_fields_still_merge_null_safe(self):
        first = _correlated_row(claimed_at=T0 - timedelta(days=3), redemption_txn_amount=None)
        second = _correlated_row(claimed_at=T0, redemption_txn_amount=100.0)
        report, _ = finalize_report(_correlated(first, second), _fee_summaries())
        assert report["redemption_txn_amount"].to_list() == [100.0]

    def test_sequence_by_user(self):
        rows = [
            _correlated_row(customer_id="C2", redemption_txn_id=3),
            _correlated_row(redemption_txn_id=2, redemption_time=T0 + timedelta(days=5)),
            _correlated_row(redemption_txn_id=1, redemption_time=T0 + timedelta(days=2)),
            _correlated_row(coupon_campaign_id="NU-CB-2302", claimed_at=T0 - timedelta(days=30),
                            redemption_txn_id=4),
        ]
        report, _ = finalize_report(_correlated(*rows), _fee_summaries())
        assert report["user_id"].to_list() == ["C1", "C1", "C1", "C2"]
        assert report["transaction_sequence_by_user"].to_list() == [1, 2, 3, 1]
        assert report["redemption_txn_id"].to_list() == [4, 1, 2, 3]

    def test_report_columns(self):
        report, _ = finalize_report(_correlated(_correlated_row()), _fee_summaries())
        assert report.columns == list(REPORT_SCHEMA.keys())
        assert dict(report.schema) == REPORT_SCHEMA
        assert report["final_redemption_amount"].to_list() == [10.0]


class TestPipelineScenarios:

    def test_new_user_never_reported(self, config):
        report, stats = _run(
            config,
            claims=[claim()],
            payments=[payment(at=days_before(400))],
            redemptions=[redemption()],
            payouts=[payout(entries=[plc()])],
        )
        assert stats.claims == 1
        assert stats.flagged_claims == 0
        assert report.height == 0

    def test_existing_delivery_user(self, config):
        report, _ = _run(
            config,
            claims=[claim(cashback=15.0)],
            payments=[
                payment(txn_id="recent", at=days_before(10), state="COMPLETED"),
                payment(txn_id="older", at=days_before(200), state="AUTHORIZED"),
            ],
            redemptions=[redemption(event_key="9001", amount=150.0)],
            payouts=[payout(order_id="9001", entries=[plc(fee=2.0, tax=0.22)])],
        )
        assert report.height == 1
        row = report.row(0, named=True)
        assert row["user_id"] == "C1"
        assert row["coupon_id"] == "NU-CB-2301"
        assert row["transaction_sequence_by_user"] == 1
        assert row["incorrectly_claimed_channel"] == "Delivery"
        assert row["Delivery_User_Status"] == "Existing Delivery User"
        assert row["MO_User_Status"] == "New MO User"
        assert row["previous_delivery_txn_id"] == "recent"
        assert row["previous_delivery_txn_state"] == "COMPLETED"
        assert row["previous_mo_txn_id"] is None
        assert row["final_redemption_amount"] == 15.0
        assert row["redemption_txn_amount"] == 150.0
        assert row["total_payout_cost"] == pytest.approx(2.22)

    def test_both_channels(self, config):
        report, _ = _run(
            config,
            claims=[claim()],
            payments=[payment(txn_id="d"), payment(txn_id="m", channel_id=MO_ID)],
            redemptions=[redemption()],
        )
        assert report["incorrectly_claimed_channel"].to_list() == ["Both Channels"]

    def test_repeat_claims_on_one_redemption_stay_consistent(self, config):
        report, stats = _run(
            config,
            claims=[claim(at=days_before(100)), claim(at=T0)],
            payments=[
                payment(txn_id="d1", at=days_before(370)),
                payment(txn_id="m1", channel_id=MO_ID, at=days_before(50)),
            ],
            redemptions=[redemption()],
        )
        assert stats.flagged_claims == 2
        assert stats.finalize.merge_conflicts == 1
        assert report.height == 1
        row = report.row(0, named=True)
        assert row["coupon_claimed_at"] == days_before(100)
        assert row["incorrectly_claimed_channel"] == "Delivery"
        assert row["Delivery_User_Status"] == "Existing Delivery User"
        assert row["MO_User_Status"] == "New MO User"
        assert row["previous_delivery_txn_id"] == "d1"
        assert row["previous_mo_txn_id"] is None

    def test_malformed_rows_do_not_abort(self, config):
        report, stats = _run(
            config,
            claims=[claim(), claim(customer="C9", at="not a time")],
            payments=[payment()],
            redemptions=[redemption()],
            payouts=[payout(entries="[{oops")],
        )
        assert report.height == 1
        assert report["total_payout_cost"].to_list() == [0.0]
        assert stats.fee_schema_mismatches == 1
        assert stats.exclusions.counts[("claims", "malformed")] == 1

    def test_invalid_config_fails_before_processing(self):
        raw = RawSources(*(pl.DataFrame() for _ in range(5)))
        with pytest.raises(ValueError, match="campaign_allow_list"):
            run_pipeline(raw, PipelineConfig(campaign_allow_list=[]), NOW)

    def test_run_budget(self):
        config = PipelineConfig(run_budget_seconds=1e-9)
        with pytest.raises(RunBudgetExceeded):
            run_pipeline(make_raw(claims=[claim()]), config, NOW)


class TestSyntheticRun:

    @pytest.fixture(scope="class")
    def result(self):
        raw = RawSources(**generate_sources(n_customers=120, seed=7))
        return run_pipeline(raw, PipelineConfig(), REFERENCE_NOW)

    def test_report_shape(self, result):
        report, stats = result
        assert report.height > 0
        assert report.columns == list(REPORT_SCHEMA.keys())
        assert stats.report_rows == report.height

    def test_one_row_per_key(self, result):
        report, _ = result
        assert report.select(REPORT_KEY).is_duplicated().sum() == 0

    def test_sequence_contiguous_per_user(self, result):
        report, _ = result
        per_user = report.group_by("user_id").agg([
            pl.col("transaction_sequence_by_user").min().alias("lo"),
            pl.col("transaction_sequence_by_user").max().alias("hi"),
            pl.col("transaction_sequence_by_user").n_unique().alias("n_unique"),
            pl.len().alias("n"),
        ])
        assert (per_user["lo"] == 1).all()
        assert (per_user["hi"] == per_user["n"]).all()
        assert (per_user["n_unique"] == per_user["n"]).all()

    def test_sequence_follows_claim_then_redemption_time(self, result):
        report, _ = result
        resorted = report.sort(["user_id", "coupon_claimed_at", "redemption_time",
                                "coupon_id", "redemption_txn_id"])
        assert resorted["transaction_sequence_by_user"].to_list() == \
            report["transaction_sequence_by_user"].to_list()

    def test_total_payout_cost(self, result):
        report, _ = result
        expected = report["plc_fee"].fill_null(0.0) + report["plc_tax"].fill_null(0.0)
        assert (report["total_payout_cost"] - expected).abs().max() < 1e-9
        assert (report["total_payout_cost"] >= 0).all()

    def test_every_row_has_prior_evidence(self, result):
        report, _ = result
        evidence = report["previous_delivery_txn_id"].is_not_null() | report["previous_mo_txn_id"].is_not_null()
        assert evidence.all()

    def test_write_report(self, result, tmp_path):
        report, _ = result
        parquet_path = tmp_path / "out" / "report.parquet"
        csv_path = tmp_path / "out" / "report.csv"
        write_report(report, str(parquet_path), str(csv_path))
        assert pl.read_parquet(parquet_path).height == report.height
        assert csv_path.exists()

    def test_channel_label_matches_evidence(self, result):
        report, _ = result
        has_delivery = report["previous_delivery_txn_id"].is_not_null()
        has_mo = report["previous_mo_txn_id"].is_not_null()
        expected = [
            "Both Channels" if d and m else "Delivery" if d else "MO"
            for d, m in zip(has_delivery.to_list(), has_mo.to_list())
        ]
        assert report["incorrectly_claimed_channel"].to_list() == expected

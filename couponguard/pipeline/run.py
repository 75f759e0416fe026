"""
End-to-end detection run: Source Filter -> Temporal Correlator -> Claim
Summarizer -> Fraud Classifier -> Redemption Correlator -> Fee Extractor ->
Finalizer.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import polars as pl

from couponguard.contracts.config import PipelineConfig
from couponguard.contracts.schemas import REPORT_CSV_PATH, REPORT_OUTPUT_PATH
from couponguard.pipeline.classify import classify_claims
from couponguard.pipeline.correlate import rank_prior_payments
from couponguard.pipeline.fees import extract_fees
from couponguard.pipeline.finalize import FinalizeStats, finalize_report
from couponguard.pipeline.ingest import ExclusionStats, RawSources, filter_sources
from couponguard.pipeline.redeem import correlate_redemptions
from couponguard.pipeline.summarize import summarize_claims


class RunBudgetExceeded(RuntimeError):
    """The run took longer than the caller's budget; no output is produced."""


@dataclass
class RunStats:
    reference_now: datetime
    exclusions: ExclusionStats = field(default_factory=ExclusionStats)
    claims: int = 0
    flagged_claims: int = 0
    redemption_rows: int = 0
    fee_schema_mismatches: int = 0
    finalize: FinalizeStats = field(default_factory=FinalizeStats)
    report_rows: int = 0
    stage_seconds: dict[str, float] = field(default_factory=dict)


class _StageClock:
    """Times stages and enforces the optional end-to-end budget."""

    def __init__(self, stats: RunStats, budget_seconds: Optional[float]):
        self.stats = stats
        self.budget_seconds = budget_seconds
        self.started = time.monotonic()
        self.mark = self.started

    def lap(self, stage: str) -> None:
        now = time.monotonic()
        self.stats.stage_seconds[stage] = now - self.mark
        self.mark = now
        elapsed = now - self.started
        if self.budget_seconds is not None and elapsed > self.budget_seconds:
            raise RunBudgetExceeded(
                f"run exceeded its {self.budget_seconds:.1f}s budget after stage '{stage}' "
                f"({elapsed:.1f}s elapsed)"
            )


def run_pipeline(
    raw: RawSources, config: PipelineConfig, now: datetime
) -> tuple[pl.DataFrame, RunStats]:
    """
    Run every stage over `raw` and return (report, stats). `now` anchors the
    source lookback window; the configuration is validated first.
    """
    config.validate()
    stats = RunStats(reference_now=now)
    clock = _StageClock(stats, config.run_budget_seconds)

    sources, stats.exclusions = filter_sources(raw, config, now)
    stats.claims = sources.claims.height
    clock.lap("ingest")

    ranked = rank_prior_payments(sources.claims, sources.payments, config)
    clock.lap("correlate")

    summaries = summarize_claims(ranked)
    clock.lap("summarize")

    flags = classify_claims(summaries)
    stats.flagged_claims = flags.height
    clock.lap("classify")

    correlated = correlate_redemptions(flags, sources.claims, sources.rewards)
    stats.redemption_rows = correlated.height
    clock.lap("redeem")

    fee_summaries, stats.fee_schema_mismatches = extract_fees(
        sources.payouts, correlated["redemption_txn_id"], config
    )
    stats.exclusions.add("payouts", "fee_schema_mismatch", stats.fee_schema_mismatches)
    clock.lap("fees")

    report, stats.finalize = finalize_report(correlated, fee_summaries)
    stats.report_rows = report.height
    clock.lap("finalize")
    return report, stats


def write_report(
    report: pl.DataFrame,
    parquet_path: str = REPORT_OUTPUT_PATH,
    csv_path: Optional[str] = REPORT_CSV_PATH,
) -> None:
    """Write the report as parquet, plus a CSV export when csv_path is set."""
    Path(parquet_path).parent.mkdir(parents=True, exist_ok=True)
    report.write_parquet(parquet_path)
    print(f"[pipeline] report -> {parquet_path}")
    if csv_path:
        Path(csv_path).parent.mkdir(parents=True, exist_ok=True)
        report.write_csv(csv_path)
        print(f"[pipeline] report -> {csv_path}")

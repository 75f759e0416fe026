"""
CLI entrypoint: python -m couponguard.pipeline
Runs the full detection pipeline and writes the fraud report.
"""

from datetime import datetime
from typing import Optional

import polars as pl
from rich import box
from rich.console import Console
from rich.table import Table

from couponguard.contracts.config import PipelineConfig, load_config
from couponguard.contracts.schemas import RAW_DATA_DIR, REPORT_CSV_PATH, REPORT_OUTPUT_PATH
from couponguard.data_generator.generate import REFERENCE_NOW
from couponguard.pipeline.ingest import load_raw_sources
from couponguard.pipeline.run import RunStats, run_pipeline, write_report

console = Console()


def print_exposure(report: pl.DataFrame) -> None:
    """Payout exposure per incorrectly claimed channel."""
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold magenta")
    table.add_column("Channel", style="bold")
    table.add_column("Users", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Cashback", justify="right")
    table.add_column("PLC fee", justify="right")
    table.add_column("PLC tax", justify="right")
    table.add_column("Payout cost", justify="right")

    by_channel = (
        report.group_by("incorrectly_claimed_channel")
        .agg([
            pl.col("user_id").n_unique().alias("users"),
            pl.len().alias("rows"),
            pl.col("final_redemption_amount").sum().alias("cashback"),
            pl.col("plc_fee").sum().alias("plc_fee"),
            pl.col("plc_tax").sum().alias("plc_tax"),
            pl.col("total_payout_cost").sum().alias("total_payout_cost"),
        ])
        .sort("incorrectly_claimed_channel")
    )
    for row in by_channel.iter_rows(named=True):
        table.add_row(
            row["incorrectly_claimed_channel"],
            f"{row['users']:,}",
            f"{row['rows']:,}",
            f"{row['cashback']:,.2f}",
            f"{row['plc_fee']:,.2f}",
            f"{row['plc_tax']:,.2f}",
            f"[red]{row['total_payout_cost']:,.2f}[/red]",
        )
    console.print(table)


def print_run_stats(stats: RunStats) -> None:
    console.print(f"  Reference now      : {stats.reference_now:%Y-%m-%d %H:%M:%S}")
    console.print(f"  Claims in scope    : {stats.claims:,}")
    console.print(f"  Flagged claims     : {stats.flagged_claims:,}")
    console.print(f"  Redemption rows    : {stats.redemption_rows:,}")
    console.print(f"  Report rows        : {stats.report_rows:,}")
    console.print(f"  Multi-tier orders  : {stats.finalize.multi_tier_orders:,}")
    if stats.finalize.merge_conflicts:
        console.print(f"  [yellow]Merge conflicts    : {stats.finalize.merge_conflicts:,}[/yellow]")

    if stats.exclusions.counts:
        table = Table(box=box.SIMPLE, title="Excluded rows", header_style="bold")
        table.add_column("Source")
        table.add_column("Reason")
        table.add_column("Rows", justify="right")
        for (source, reason), n in sorted(stats.exclusions.counts.items()):
            table.add_row(source, reason, f"{n:,}")
        console.print(table)

    timings = ", ".join(f"{stage} {secs:.2f}s" for stage, secs in stats.stage_seconds.items())
    console.print(f"[dim]Stage timings: {timings}[/dim]")


def main(
    config_path: Optional[str] = None,
    now: Optional[datetime] = None,
    raw_dir: str = RAW_DATA_DIR,
    output_path: str = REPORT_OUTPUT_PATH,
    csv_path: Optional[str] = REPORT_CSV_PATH,
) -> pl.DataFrame:
    config = load_config(config_path) if config_path else PipelineConfig().validate()

    console.rule("[bold blue]CouponGuard: New-User Coupon Abuse Detection")
    raw, is_mock = load_raw_sources(raw_dir)
    # Synthetic sources are anchored to the generator's reference time
    fallback_now = REFERENCE_NOW if is_mock else datetime.now()
    run_now = now or config.resolve_now(fallback_now)

    report, stats = run_pipeline(raw, config, run_now)
    write_report(report, output_path, csv_path)

    console.rule("[bold green]Payout Exposure")
    print_exposure(report)
    print_run_stats(stats)
    if is_mock:
        console.print("[dim]NOTE: ran on synthetic sources (no snapshots found).[/dim]")
    return report


if __name__ == "__main__":
    main()

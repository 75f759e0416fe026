"""
CouponGuard CLI entrypoint.

Usage:
    python -m couponguard.main generate    # Generate synthetic raw snapshots
    python -m couponguard.main pipeline    # Run the detection pipeline
    python -m couponguard.main run-all     # Generate + pipeline
"""

from datetime import datetime

import click
from rich.console import Console

from couponguard.contracts.config import ConfigurationError
from couponguard.contracts.schemas import RAW_DATA_DIR, REPORT_CSV_PATH, REPORT_OUTPUT_PATH
from couponguard.pipeline.run import RunBudgetExceeded

console = Console()


@click.group()
def cli():
    """CouponGuard new-user coupon abuse detection."""
    pass


@cli.command()
@click.option("--raw-dir", default=RAW_DATA_DIR, show_default=True, help="Where to write the snapshots.")
def generate(raw_dir):
    """Generate synthetic raw snapshots."""
    console.rule("[bold]Step 1: Data Generation[/bold]")
    from couponguard.data_generator.generate import main
    main(raw_dir)
    console.print("[green]Data generation complete.[/green]\n")


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="YAML run configuration.")
@click.option("--now", type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
              default=None, help="Reference timestamp for the lookback window.")
@click.option("--raw-dir", default=RAW_DATA_DIR, show_default=True)
@click.option("--output", "output_path", default=REPORT_OUTPUT_PATH, show_default=True)
@click.option("--csv", "csv_path", default=REPORT_CSV_PATH, show_default=True)
def pipeline(config_path, now: datetime, raw_dir, output_path, csv_path):
    """Run the detection pipeline."""
    console.rule("[bold]Step 2: Pipeline[/bold]")
    from couponguard.pipeline.__main__ import main as pipeline_main
    try:
        pipeline_main(config_path=config_path, now=now, raw_dir=raw_dir,
                      output_path=output_path, csv_path=csv_path)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise SystemExit(2)
    except RunBudgetExceeded as exc:
        console.print(f"[bold red]Run aborted:[/bold red] {exc}")
        raise SystemExit(3)
    console.print("[green]Pipeline complete.[/green]\n")


@cli.command(name="run-all")
@click.pass_context
def run_all(ctx):
    """Generate snapshots, then run the pipeline."""
    console.rule("[bold cyan]CouponGuard[/bold cyan]")
    console.print("Running full end-to-end pipeline...\n")

    from couponguard.data_generator.generate import REFERENCE_NOW
    ctx.invoke(generate)
    # Generated snapshots are anchored to REFERENCE_NOW, not the wall clock
    ctx.invoke(pipeline, now=REFERENCE_NOW)

    console.rule("[bold green]Pipeline Complete[/bold green]")
    console.print("\nOutputs:")
    console.print(f"  Snapshots: {RAW_DATA_DIR}/*.parquet")
    console.print(f"  Report:    {REPORT_OUTPUT_PATH}")
    console.print(f"  CSV:       {REPORT_CSV_PATH}")


if __name__ == "__main__":
    cli()

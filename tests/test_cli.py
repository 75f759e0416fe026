"""
Tests for the click CLI.
"""

import polars as pl
from click.testing import CliRunner

from couponguard.contracts.schemas import REPORT_OUTPUT_PATH, REPORT_SCHEMA
from couponguard.main import cli


class TestCli:

    def test_bad_config_exits_before_processing(self, tmp_path):
        config_path = tmp_path / "bad.yml"
        config_path.write_text("campaign_allow_list: []\n")
        output = tmp_path / "report.parquet"

        result = CliRunner().invoke(cli, [
            "pipeline", "--config", str(config_path), "--output", str(output),
            "--raw-dir", str(tmp_path / "raw"),
        ])
        assert result.exit_code == 2
        assert "Configuration error" in result.output
        assert not output.exists()

    def test_generate_then_pipeline(self, tmp_path):
        raw_dir = tmp_path / "raw"
        output = tmp_path / "report.parquet"
        csv = tmp_path / "report.csv"
        runner = CliRunner()

        result = runner.invoke(cli, ["generate", "--raw-dir", str(raw_dir)])
        assert result.exit_code == 0, result.output
        assert (raw_dir / "claims.parquet").exists()

        result = runner.invoke(cli, [
            "pipeline", "--raw-dir", str(raw_dir), "--now", "2026-03-01",
            "--output", str(output), "--csv", str(csv),
        ])
        assert result.exit_code == 0, result.output
        report = pl.read_parquet(output)
        assert report.columns == list(REPORT_SCHEMA.keys())
        assert report.height > 0

    def test_run_all_anchors_to_generator_reference_time(self, tmp_path):
        runner = CliRunner()
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(cli, ["run-all"])
            assert result.exit_code == 0, result.output
            assert "Reference now      : 2026-03-01 00:00:00" in result.output
            report = pl.read_parquet(REPORT_OUTPUT_PATH)
        assert report.height > 0

"""Unit tests for the command line entry point."""
from unittest.mock import patch

import pytest

from gridengine.backtest.simulator import BacktestResult, SimulationStatus
from main import EXIT_ERROR, build_parser, main


# =============================================================================
# Parser Tests
# =============================================================================

class TestParser:
    """Test argument parsing for each subcommand."""

    def test_backtest_flags(self):
        args = build_parser().parse_args(["backtest", "cfg.json", "--clamp", "--no-save", "--symbols", "A", "B"])

        assert args.command == "backtest"
        assert args.config == "cfg.json"
        assert args.clamp and args.no_save
        assert args.symbols == ["A", "B"]

    def test_profit_transfer_defaults(self):
        args = build_parser().parse_args(["profit-transfer", "cfg.json", "--percentage", "0.2", "--once"])

        assert args.percentage == 0.2
        assert args.interval == 3600.0
        assert args.once
        assert args.user is None

    def test_optimize_top(self):
        args = build_parser().parse_args(["optimize", "cfg.json", "--top", "3", "--log-level", "DEBUG"])
        assert args.top == 3
        assert args.log_level == "DEBUG"

    def test_profit_transfer_requires_percentage(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["profit-transfer", "cfg.json"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


# =============================================================================
# Entry Point Tests
# =============================================================================

class TestMain:
    """Test error handling in main()."""

    @pytest.mark.asyncio
    async def test_missing_config_is_error_exit(self, tmp_path, capsys):
        with patch("main.setup_logging"):
            code = await main(["backtest", str(tmp_path / "missing.json")])

        assert code == EXIT_ERROR
        assert "InvalidConfiguration" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_invalid_json_is_error_exit(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        with patch("main.setup_logging"):
            assert await main(["download", str(path)]) == EXIT_ERROR

    @pytest.mark.asyncio
    async def test_failed_backtest_is_error_exit(self, tmp_path, capsys):
        path = tmp_path / "config.json"
        path.write_text("{}")
        failed = BacktestResult(
            status=SimulationStatus.FAILED,
            symbol="BTC/USDT:USDT",
            starting_balance=1000.0,
            error="missing ticks between 0 and 180000 (expected 60000ms step)",
        )

        with patch("main.setup_logging"), patch("main.BacktestRunner") as runner_cls:
            runner_cls.return_value.run.return_value = {failed.symbol: failed}
            code = await main(["backtest", str(path), "--no-save"])

        assert code == EXIT_ERROR
        captured = capsys.readouterr()
        assert "BACKTEST REPORT" in captured.out
        assert "SimulationFailed: missing ticks" in captured.err

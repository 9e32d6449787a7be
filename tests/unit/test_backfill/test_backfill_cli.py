"""
Unit tests for the knowledge-search-backfill command.
"""

from __future__ import annotations

import json
import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from knowledge_search.backfill import cli
from knowledge_search.backfill.runner import MigrationStats
from knowledge_search.search.exceptions import VectorIndexUnavailable


@pytest.fixture(autouse=True)
def cli_env(settings):
    with (
        patch.object(cli, "get_settings", return_value=settings),
        patch.object(cli, "setup_structured_logging"),
    ):
        yield


class TestMain:
    def test_prints_stats_as_json(self, capsys) -> None:
        stats = MigrationStats(processed=2, failed=1, skipped=3, total=6)
        with patch.object(cli, "run_backfill", AsyncMock(return_value=stats)) as run:
            code = cli.main(["--batch-size", "10", "--inter-batch-delay-ms", "250"])

        assert code == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out) == stats.to_dict()
        _, batch_size, delay = run.await_args.args
        assert (batch_size, delay) == (10, 0.25)

    def test_defaults_come_from_settings(self, settings) -> None:
        with patch.object(cli, "run_backfill", AsyncMock(return_value=MigrationStats())) as run:
            cli.main([])

        _, batch_size, delay = run.await_args.args
        assert batch_size == settings.backfill_batch_size
        assert delay == settings.backfill_inter_batch_delay_ms / 1000.0

    def test_model_override(self) -> None:
        with patch.object(cli, "run_backfill", AsyncMock(return_value=MigrationStats())) as run:
            cli.main(["--model", "other-model"])

        assert run.await_args.args[0].embedding_model == "other-model"

    @pytest.mark.parametrize(
        "error",
        [sqlite3.OperationalError("unable to open database file"), VectorIndexUnavailable("down")],
    )
    def test_setup_errors_exit_non_zero(self, error, capsys) -> None:
        with patch.object(cli, "run_backfill", AsyncMock(side_effect=error)):
            assert cli.main([]) == cli.EXIT_SETUP_ERROR
        assert "could not start" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "argv", [["--batch-size", "0"], ["--inter-batch-delay-ms", "-5"]]
    )
    def test_invalid_arguments(self, argv) -> None:
        with patch.object(cli, "run_backfill", AsyncMock()) as run:
            assert cli.main(argv) == cli.EXIT_SETUP_ERROR
        run.assert_not_awaited()

    def test_runs_against_empty_store(self, capsys) -> None:
        assert cli.main(["--inter-batch-delay-ms", "0"]) == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out)["total"] == 0

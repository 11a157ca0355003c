"""
Tests for the local-only CLI commands (no provider credentials needed).
"""
import asyncio

import pytest
from typer.testing import CliRunner

from memrag.ingestion.store import InMemoryQueueStore
from memrag.main import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"index:\n  local_dir: {tmp_path / 'index'}\nobservability:\n  log_file: null\n",
        encoding="utf-8",
    )
    return path


class TestCli:
    def test_chunk(self, tmp_path):
        notes = tmp_path / "notes.md"
        notes.write_text("# Auth\n\nFixed the RLS policy on user_sessions.", encoding="utf-8")

        result = runner.invoke(app, ["chunk", str(notes), "--data-type", "session"])

        assert result.exit_code == 0
        assert "1 chunks" in result.output

    def test_chunk_missing_file(self, tmp_path):
        result = runner.invoke(app, ["chunk", str(tmp_path / "nope.md")])
        assert result.exit_code == 1

    def test_explain_alpha(self):
        result = runner.invoke(app, ["explain-alpha", "RLS policy error", "--data-type", "code"])

        assert result.exit_code == 0
        assert "alpha =" in result.output

    def test_decay_curve(self):
        result = runner.invoke(app, ["decay-curve", "session", "--max-days", "3"])

        assert result.exit_code == 0
        assert "exponential" in result.output

    def test_ingest_to_queue(self, tmp_path, config_file):
        notes = tmp_path / "notes.md"
        notes.write_text("Deployed the vite build to staging.", encoding="utf-8")

        result = runner.invoke(
            app,
            ["ingest", str(notes), "--data-type", "deployment", "--queue", "--priority", "2", "--config", str(config_file)],
        )

        assert result.exit_code == 0
        assert "Enqueued" in result.output
        store = InMemoryQueueStore.load(tmp_path / "index" / "queue.json")
        assert asyncio.run(store.stats())["pending"] == 1
        [item] = asyncio.run(store.claim_pending(10))
        assert item.priority == 2
        assert item.data_type.value == "deployment"

"""Smoke tests for the operator CLI against a temporary world."""

import pytest
from typer.testing import CliRunner

from agentworld.cli.context import run_async
from agentworld.cli.main import app
from agentworld.config import WorldSettings
from agentworld.world import open_world

from tests.conftest import ALICE

runner = CliRunner()


@pytest.fixture
def world_env(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENTWORLD_DB_PATH", str(tmp_path / "world.db"))
    monkeypatch.setenv("AGENTWORLD_AUDIT_DB_PATH", str(tmp_path / "audit.db"))
    monkeypatch.setenv("AGENTWORLD_LOG_LEVEL", "WARNING")

    async def seed():
        world = await open_world(WorldSettings())
        try:
            await world.registry.register(ALICE, "Ada")
            await world.ledger.distribute(ALICE, "mint_passport", "10", "mint:ada")
            await world.ledger.distribute(ALICE, "tip_artist", "0.5", "tip:ada")
        finally:
            await world.close()

    run_async(seed())


def test_status(world_env):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "Agents:        1" in result.output


def test_leaderboard(world_env):
    result = runner.invoke(app, ["leaderboard"])
    assert result.exit_code == 0
    assert "10.5" in result.output


def test_agent_not_found(world_env):
    result = runner.invoke(app, ["agent", "0x" + "9" * 40])
    assert result.exit_code == 1
    assert "not_found" in result.output


def test_rebuild_leaderboard(world_env):
    result = runner.invoke(app, ["rebuild-leaderboard"])
    assert result.exit_code == 0
    assert "Rebuilt leaderboard for 1 agents" in result.output


def test_resolve_unknown_entry(world_env):
    result = runner.invoke(app, ["resolve", "nope", "fixed"])
    assert result.exit_code == 1

"""
Tests for the command line interface.
"""

from __future__ import annotations

import pytest
from conftest import FEE, FakeChainClient
from typer.testing import CliRunner

from hdfund import cli
from hdfund.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("MNEMONIC", "MNEMONIC_FILE", "FUNDING_THRESHOLD", "FUNDING_TARGET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_node(monkeypatch):
    chain = FakeChainClient()
    monkeypatch.setattr(cli, "JsonRpcChainClient", lambda **kwargs: chain)
    return chain


def test_requires_a_mode():
    result = runner.invoke(app, [])
    assert result.exit_code == 2


def test_rejects_two_modes():
    result = runner.invoke(app, ["--init-dist", "--reclaim"])
    assert result.exit_code == 2


def test_invalid_policy_exits_2(monkeypatch, sample_mnemonic):
    monkeypatch.setenv("MNEMONIC", sample_mnemonic)
    result = runner.invoke(app, ["--show", "--threshold=-1"])
    assert result.exit_code == 2


def test_target_below_threshold_exits_2(monkeypatch, fake_node, sample_mnemonic):
    monkeypatch.setenv("MNEMONIC", sample_mnemonic)
    result = runner.invoke(app, ["--show", "--threshold", "600", "--target", "500"])
    assert result.exit_code == 2
    # Rejected before any node connection is made
    assert not fake_node.closed

def test_missing_mnemonic_exits_1(fake_node):
    result = runner.invoke(app, ["--show"])
    assert result.exit_code == 1
    assert fake_node.closed


def test_show(monkeypatch, fake_node, sample_mnemonic):
    monkeypatch.setenv("MNEMONIC", sample_mnemonic)
    result = runner.invoke(app, ["--show", "-n", "3"])
    assert result.exit_code == 0
    assert fake_node.sent == []


def test_init_dist(monkeypatch, fake_node, deriver, sample_mnemonic):
    monkeypatch.setenv("MNEMONIC", sample_mnemonic)
    fake_node.balances[deriver.derive(0).address] = 10 * FEE

    result = runner.invoke(
        app, ["--init-dist", "-n", "3", "--threshold", "100", "--target", "500"]
    )

    assert result.exit_code == 0
    assert [tx.value for tx in fake_node.sent] == [500, 500]
    assert fake_node.closed


def test_init_dist_fatal_exits_1(monkeypatch, fake_node, sample_mnemonic):
    monkeypatch.setenv("MNEMONIC", sample_mnemonic)
    result = runner.invoke(app, ["--init-dist", "-n", "3", "--threshold", "1", "--target", "1"])
    assert result.exit_code == 1
    assert fake_node.sent == []


def test_mnemonic_file_option(fake_node, tmp_path, sample_mnemonic):
    path = tmp_path / "seed.txt"
    path.write_text(sample_mnemonic)
    result = runner.invoke(app, ["--show", "-f", str(path)])
    assert result.exit_code == 0

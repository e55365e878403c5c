"""Tests for the llm-relay command line."""

import json

import httpx
import pytest
from click.testing import CliRunner
from rich.console import Console

from llm_relay import cli as cli_module
from llm_relay.cli import cli
from llm_relay.config import load_config


@pytest.fixture
def runner():
    return CliRunner()


def _fake_get(payloads):
    """Stand-in for httpx.get serving canned admin API responses by path."""
    def get(url, params=None, **kwargs):
        path = httpx.URL(url).path
        request = httpx.Request("GET", url, params=params)
        return httpx.Response(200, json=payloads[path], request=request)
    return get


def test_init_writes_loadable_config(runner, tmp_path):
    output = tmp_path / "relay.yaml"

    result = runner.invoke(cli, ["init", "--output", str(output)], obj={})

    assert result.exit_code == 0
    assert output.exists()
    assert load_config(output).get_route("together") is not None


def test_start_with_missing_config_fails(runner, tmp_path):
    result = runner.invoke(cli, ["-c", str(tmp_path / "missing.yaml"), "start"], obj={})

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_routes_list(runner, monkeypatch):
    monkeypatch.setattr(cli_module, "console", Console(width=200))
    monkeypatch.setattr(cli_module.httpx, "get", _fake_get({
        "/routes": {
            "routes": [{
                "name": "together",
                "prefix": "/api/together",
                "upstream": "https://api.together.xyz/v1",
                "stats": {"requests_total": 7, "denied_total": 1, "errors_total": 0},
                "rate_limit": {"cooldown_ms": 10000, "tracked_keys": 3},
            }],
        },
    }))

    result = runner.invoke(cli, ["routes", "list", "--port", "9999"], obj={})

    assert result.exit_code == 0
    assert "/api/together" in result.output


def test_audit_verify_invalid_chain_exits_nonzero(runner, monkeypatch):
    monkeypatch.setattr(cli_module.httpx, "get", _fake_get({
        "/audit/verify": {
            "valid": False,
            "entries_checked": 4,
            "first_invalid": "aud_4_x",
            "error": "entry_hash mismatch at aud_4_x",
        },
    }))

    result = runner.invoke(cli, ["audit", "verify", "--port", "9999"], obj={})

    assert result.exit_code == 1
    assert "aud_4_x" in result.output


def test_audit_export_jsonl(runner, monkeypatch, tmp_path):
    entries = [{"id": "aud_2"}, {"id": "aud_1"}]
    monkeypatch.setattr(cli_module.httpx, "get", _fake_get({"/audit": {"count": 2, "entries": entries}}))
    output = tmp_path / "audit.jsonl"

    result = runner.invoke(
        cli, ["audit", "export", "--format", "jsonl", "--output", str(output), "--port", "9999"], obj={}
    )

    assert result.exit_code == 0
    assert [json.loads(line) for line in output.read_text().splitlines()] == entries

import json
import logging
from pathlib import Path

import pytest

from config.logging import JSONFormatter, apply_logging_config
from config.settings import default_config_paths, load_runtime_config
from errors import ConfigurationError, SchemaValidationError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "runtime.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_shipped_config_loads(monkeypatch) -> None:
    monkeypatch.delenv("KEEPER_RUNTIME_CONFIG", raising=False)
    monkeypatch.delenv("KEEPER_LOGGING_CONFIG", raising=False)
    runtime_path, logging_path = default_config_paths()
    assert logging_path.name == "logging.yaml"

    cfg = load_runtime_config(runtime_path)

    assert cfg.keeper.network_tag == "KEEP3R"
    assert cfg.keeper.block_duration_seconds == 12
    assert cfg.keeper.tolerance_threshold_seconds == 60
    assert cfg.chain.sequencer_address == "0x238b4E35dAed6100C6162fAE4510261f88996EC9"
    assert cfg.chain.upkeep_job_address == "0x5D469E1ef75507b0E0439667ae45e280b9D81B9C"
    assert cfg.broadcast.priority_fee_gwei == 2.1
    assert cfg.broadcast.gas_limit == 10_000_000
    assert cfg.broadcast.burst_size == 3
    assert cfg.service.port == 8080


def test_defaults_follow_block_duration(tmp_path) -> None:
    cfg = load_runtime_config(_write(tmp_path, "keeper:\n  network_tag: GELATO\n  block_duration_seconds: 2\n"))

    assert cfg.keeper.network_tag == "GELATO"
    assert cfg.keeper.tolerance_threshold_seconds == 10
    assert cfg.keeper.retry_delay_seconds == 2
    assert cfg.keeper.work_method == "work"
    assert cfg.broadcast.receipt_timeout_seconds == 6
    assert cfg.chain.rpc_url_env == "RPC_HTTP_MAINNET_URI"
    assert cfg.config_dir == tmp_path.resolve()


def test_schema_violations_are_reported_by_path(tmp_path) -> None:
    text = "broadcast:\n  gas_limit: 100\nchain:\n  sequencer_address: not-an-address\nextra: true\n"

    with pytest.raises(SchemaValidationError) as exc:
        load_runtime_config(_write(tmp_path, text))

    paths = [v.path for v in exc.value.violations]
    assert exc.value.kind == "KeeperConfig"
    assert paths == sorted(paths)
    assert "/broadcast/gas_limit" in paths
    assert "/chain/sequencer_address" in paths
    assert "/" in paths


def test_network_tag_longer_than_bytes32_is_rejected(tmp_path) -> None:
    with pytest.raises(SchemaValidationError):
        load_runtime_config(_write(tmp_path, f"keeper:\n  network_tag: {'X' * 32}\n"))


def test_missing_or_malformed_file_fails_closed(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_runtime_config(tmp_path / "absent.yaml")
    with pytest.raises(ConfigurationError):
        load_runtime_config(_write(tmp_path, "- just\n- a list\n"))


def test_secrets_come_from_environment(tmp_path, monkeypatch) -> None:
    cfg = load_runtime_config(_write(tmp_path, "chain:\n  rpc_url_env: TEST_KEEPER_RPC\n"))

    monkeypatch.delenv("TEST_KEEPER_RPC", raising=False)
    with pytest.raises(ConfigurationError, match="TEST_KEEPER_RPC"):
        cfg.chain.rpc_url()

    monkeypatch.setenv("TEST_KEEPER_RPC", "http://localhost:8545")
    assert cfg.chain.rpc_url() == "http://localhost:8545"


def test_config_path_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("KEEPER_RUNTIME_CONFIG", str(tmp_path / "r.yaml"))
    monkeypatch.setenv("KEEPER_LOGGING_CONFIG", str(tmp_path / "l.yaml"))
    assert default_config_paths() == (tmp_path / "r.yaml", tmp_path / "l.yaml")


def test_json_formatter_carries_structured_extras() -> None:
    record = logging.LogRecord("keeper", logging.INFO, __file__, 1, "window_closed", None, None)
    record.event = "window_closed"
    record.window_start = 156
    record.window_end = 169

    line = json.loads(JSONFormatter().format(record))

    assert line["event"] == "window_closed"
    assert (line["window_start"], line["window_end"]) == (156, 169)
    assert line["level"] == "INFO"
    assert "job" not in line


def test_missing_logging_config_fails_closed(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        apply_logging_config(tmp_path / "logging.yaml")

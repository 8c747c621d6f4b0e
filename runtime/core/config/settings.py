"""Configuration loader for the keeper runtime.

Rules:
- Fail closed when config is missing or invalid.
- runtime.yaml is validated against config/schemas before it is read.
- Secrets (RPC URL, signer key) are never read from YAML; runtime.yaml only
  names the environment variables that hold them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from config.schema_validator import SchemaValidator
from errors import ConfigurationError

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


@dataclass(frozen=True)
class ServiceConfig:
    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class KeeperConfig:
    network_tag: str
    block_duration_seconds: float
    tolerance_threshold_seconds: float
    retry_delay_seconds: float
    resync_interval_seconds: float
    work_method: str


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    rpc_url_env: str
    signer_key_env: str
    sequencer_address: str
    upkeep_job_address: str
    request_timeout_seconds: int
    block_poll_interval_seconds: float
    event_poll_interval_seconds: float
    max_block_catchup: int

    def rpc_url(self) -> str:
        return _require_env(self.rpc_url_env)

    def signer_key(self) -> str:
        return _require_env(self.signer_key_env)


@dataclass(frozen=True)
class BroadcastConfig:
    priority_fee_gwei: float
    gas_limit: int
    burst_size: int
    receipt_timeout_seconds: float


@dataclass(frozen=True)
class RuntimeConfig:
    keeper: KeeperConfig
    chain: ChainConfig
    broadcast: BroadcastConfig
    service: ServiceConfig
    config_dir: Path


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigurationError(f"Missing required environment variable: {name}")
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid YAML root object in config file: {path}")
    return data


def load_runtime_config(runtime_config_path: Path, *, schema_validator: SchemaValidator | None = None) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    validator = schema_validator or SchemaValidator.load_from_dir(SCHEMAS_DIR)
    validator.validate("KeeperConfig", raw)

    keeper_raw = raw.get("keeper", {})
    chain_raw = raw.get("chain", {})
    broadcast_raw = raw.get("broadcast", {})
    service_raw = raw.get("service", {})

    block_duration = float(keeper_raw.get("block_duration_seconds", 12))
    keeper = KeeperConfig(
        network_tag=str(keeper_raw.get("network_tag", "KEEP3R")),
        block_duration_seconds=block_duration,
        # Five blocks of slack: observation starts before the window opens.
        tolerance_threshold_seconds=float(keeper_raw.get("tolerance_threshold_seconds", 5 * block_duration)),
        retry_delay_seconds=float(keeper_raw.get("retry_delay_seconds", block_duration)),
        resync_interval_seconds=float(keeper_raw.get("resync_interval_seconds", 600)),
        work_method=str(keeper_raw.get("work_method", "work")),
    )

    chain = ChainConfig(
        chain_id=int(chain_raw.get("chain_id", 1)),
        rpc_url_env=str(chain_raw.get("rpc_url_env", "RPC_HTTP_MAINNET_URI")),
        signer_key_env=str(chain_raw.get("signer_key_env", "TX_SIGNER_PRIVATE_KEY")),
        sequencer_address=str(chain_raw.get("sequencer_address", "0x238b4E35dAed6100C6162fAE4510261f88996EC9")),
        upkeep_job_address=str(chain_raw.get("upkeep_job_address", "0x5D469E1ef75507b0E0439667ae45e280b9D81B9C")),
        request_timeout_seconds=int(chain_raw.get("request_timeout_seconds", 30)),
        block_poll_interval_seconds=float(chain_raw.get("block_poll_interval_seconds", 1.0)),
        event_poll_interval_seconds=float(chain_raw.get("event_poll_interval_seconds", block_duration)),
        max_block_catchup=int(chain_raw.get("max_block_catchup", 16)),
    )

    broadcast = BroadcastConfig(
        priority_fee_gwei=float(broadcast_raw.get("priority_fee_gwei", 2.1)),
        gas_limit=int(broadcast_raw.get("gas_limit", 10_000_000)),
        burst_size=int(broadcast_raw.get("burst_size", 3)),
        receipt_timeout_seconds=float(broadcast_raw.get("receipt_timeout_seconds", 3 * block_duration)),
    )

    service = ServiceConfig(
        enabled=bool(service_raw.get("enabled", True)),
        host=str(service_raw.get("host", "0.0.0.0")),
        port=int(service_raw.get("port", 8080)),
    )

    return RuntimeConfig(keeper=keeper, chain=chain, broadcast=broadcast, service=service, config_dir=cfg_dir)


def default_config_paths() -> tuple[Path, Path]:
    # Environment overrides win; otherwise the files shipped next to this module.
    here = Path(__file__).resolve().parent
    runtime_path = os.environ.get("KEEPER_RUNTIME_CONFIG") or str(here / "runtime.yaml")
    logging_path = os.environ.get("KEEPER_LOGGING_CONFIG") or str(here / "logging.yaml")
    return Path(runtime_path), Path(logging_path)

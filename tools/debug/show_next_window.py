#!/usr/bin/env python3
"""Print this network's position in the sequencer and its next master window."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


async def _show() -> int:
    from dotenv import load_dotenv

    from chain.contracts import encode_network_tag
    from chain.web3_client import Web3ChainClient, build_web3
    from config.settings import default_config_paths, load_runtime_config
    from errors import ChainReadError
    from protocol.state import ProtocolState
    from protocol.window import WindowSchedule, wait_seconds

    load_dotenv(override=False)
    runtime_path, _ = default_config_paths()
    cfg = load_runtime_config(runtime_path)

    w3 = build_web3(cfg.chain.rpc_url(), timeout_seconds=cfg.chain.request_timeout_seconds)
    client = Web3ChainClient(w3=w3, sequencer_address=cfg.chain.sequencer_address)
    state = ProtocolState(reader=client, network_tag=encode_network_tag(cfg.keeper.network_tag))

    try:
        snap = await state.full_resync()
        head = await client.block_number()
    except ChainReadError as e:
        print(f"chain_read=FAIL reason={e}")
        return 1

    print(f"network={cfg.keeper.network_tag} position={snap.self_position} networks={snap.whitelist_size}")
    print(f"window_length={snap.window_length} tracked_jobs={len(snap.tracked_jobs)} head={head}")
    if not snap.is_whitelisted:
        print("next_window=NONE (not whitelisted)")
        return 2

    schedule = WindowSchedule.compute(
        head,
        window_length=snap.window_length,
        whitelist_size=snap.whitelist_size,
        self_position=snap.self_position,
    )
    delay = wait_seconds(
        schedule.start,
        head,
        block_duration_seconds=cfg.keeper.block_duration_seconds,
        tolerance_seconds=cfg.keeper.tolerance_threshold_seconds,
    )
    print(f"next_window={schedule.start}..{schedule.end - 1} sleep_seconds={delay:.0f}")
    return 0


def main() -> int:
    sys.path.insert(0, str(_repo_root() / "runtime" / "core"))
    return asyncio.run(_show())


if __name__ == "__main__":
    raise SystemExit(main())

"""Keeper service wiring.

Builds the runtime from a RuntimeConfig (web3 client, signer, protocol state,
watchers, job runner, scheduler) and owns the scheduler task. The HTTP
surface and the headless entrypoint both go through this module.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account

from broadcast.interfaces import Broadcaster
from broadcast.transaction import TransactionBroadcaster
from chain.blocks import BlockWatcher
from chain.contracts import encode_network_tag
from chain.subscriptions import SequencerEventWatcher
from chain.web3_client import Web3ChainClient, build_web3
from config.settings import RuntimeConfig
from errors import ConfigurationError, NotWhitelistedError
from executor.job_runner import JobRunner
from protocol.state import ProtocolState
from scheduler.runner import WindowScheduler
from utils import format_rfc3339

logger = logging.getLogger(__name__)


@dataclass
class KeeperService:
    protocol: ProtocolState
    scheduler: WindowScheduler
    _task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="window-scheduler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.scheduler.close()
        logger.info("keeper_stopped", extra={"event": "keeper_stopped"})

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def state_view(self) -> dict[str, Any]:
        snap = self.protocol.snapshot()
        synced = self.protocol.last_synced_at
        return {
            "network": self.protocol.network_name,
            "window_length": snap.window_length,
            "whitelist_size": snap.whitelist_size,
            "self_position": snap.self_position,
            "whitelisted": snap.is_whitelisted,
            "tracked_jobs": sorted(snap.tracked_jobs),
            "pending_events": self.protocol.pending_events,
            "last_synced_at": format_rfc3339(synced) if synced else None,
        }

    async def _run(self) -> None:
        try:
            await self.scheduler.run()
        except NotWhitelistedError:
            # Already reported by the scheduler; the service stays up and reports `halted`.
            pass


def build_keeper_service(config: RuntimeConfig, *, broadcaster: Broadcaster | None = None) -> KeeperService:
    try:
        network_tag = encode_network_tag(config.keeper.network_tag)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    w3 = build_web3(config.chain.rpc_url(), timeout_seconds=config.chain.request_timeout_seconds)
    client = Web3ChainClient(w3=w3, sequencer_address=config.chain.sequencer_address)

    if broadcaster is None:
        try:
            account = Account.from_key(config.chain.signer_key())
        except ValueError as e:
            raise ConfigurationError(f"Invalid signer key in environment variable {config.chain.signer_key_env}") from e
        broadcaster = TransactionBroadcaster(
            w3=w3,
            account=account,
            chain_id=config.chain.chain_id,
            priority_fee_gwei=config.broadcast.priority_fee_gwei,
            gas_limit=config.broadcast.gas_limit,
            burst_size=config.broadcast.burst_size,
            receipt_timeout_seconds=config.broadcast.receipt_timeout_seconds,
        )

    protocol = ProtocolState(
        reader=client,
        network_tag=network_tag,
        resync_interval_seconds=config.keeper.resync_interval_seconds,
    )
    event_watcher = SequencerEventWatcher(
        blocks=client,
        logs=client,
        sequencer_address=config.chain.sequencer_address,
        sink=protocol.submit,
        poll_interval_seconds=config.chain.event_poll_interval_seconds,
    )
    block_watcher = BlockWatcher(
        client,
        poll_interval_seconds=config.chain.block_poll_interval_seconds,
        max_catchup=config.chain.max_block_catchup,
    )
    runner = JobRunner(
        jobs=client,
        broadcaster=broadcaster,
        network_tag=network_tag,
        upkeep_job_address=config.chain.upkeep_job_address,
        work_method=config.keeper.work_method,
        job_token=protocol.job_token,
    )
    scheduler = WindowScheduler(
        protocol=protocol,
        blocks=client,
        block_watcher=block_watcher,
        runner=runner,
        block_duration_seconds=config.keeper.block_duration_seconds,
        tolerance_seconds=config.keeper.tolerance_threshold_seconds,
        retry_delay_seconds=config.keeper.retry_delay_seconds,
        event_watcher=event_watcher,
    )
    return KeeperService(protocol=protocol, scheduler=scheduler)

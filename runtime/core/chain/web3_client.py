"""web3.py implementation of the chain interfaces.

web3's HTTP provider is synchronous; every call is pushed to a worker thread
with `asyncio.to_thread` so the event loop (block subscriptions, scheduler,
state writer) is never blocked by an RPC round trip.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Sequence, TypeVar

from web3 import Web3

from chain.contracts import SEQUENCER_ABI, WORKABLE_JOB_ABI
from chain.interfaces import Block, BlockSource, JobReader, LogSource, SequencerReader
from errors import ChainReadError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_web3(rpc_url: str, *, timeout_seconds: int = 30) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))


class Web3ChainClient(BlockSource, LogSource, SequencerReader, JobReader):
    def __init__(self, *, w3: Web3, sequencer_address: str):
        self._w3 = w3
        self._sequencer = w3.eth.contract(address=Web3.to_checksum_address(sequencer_address), abi=SEQUENCER_ABI)
        self._jobs: dict[str, Any] = {}

    @property
    def w3(self) -> Web3:
        return self._w3

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            # Every transport/revert failure is a transient read error for the keeper.
            raise ChainReadError(operation, str(e)) from e

    async def block_number(self) -> int:
        return int(await self._call("eth_blockNumber", lambda: self._w3.eth.block_number))

    async def get_block(self, number: int) -> Block:
        raw = await self._call("eth_getBlockByNumber", lambda: self._w3.eth.get_block(number))
        return Block(
            number=int(raw["number"]),
            timestamp=int(raw["timestamp"]),
            base_fee_per_gas=raw.get("baseFeePerGas"),
        )

    async def get_logs(
        self, *, address: str, from_block: int, to_block: int, topics: Sequence[bytes]
    ) -> list[dict[str, Any]]:
        params = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
            # A nested list ORs the candidates for topic0.
            "topics": [[Web3.to_hex(t) for t in topics]],
        }
        logs = await self._call("eth_getLogs", lambda: self._w3.eth.get_logs(params))
        return [dict(log) for log in logs]

    async def total_window_size(self) -> int:
        return int(await self._call("totalWindowSize", self._sequencer.functions.totalWindowSize().call))

    async def num_networks(self) -> int:
        return int(await self._call("numNetworks", self._sequencer.functions.numNetworks().call))

    async def network_at(self, index: int) -> bytes:
        return bytes(await self._call("networkAt", self._sequencer.functions.networkAt(index).call))

    async def num_jobs(self) -> int:
        return int(await self._call("numJobs", self._sequencer.functions.numJobs().call))

    async def job_at(self, index: int) -> str:
        address = await self._call("jobAt", self._sequencer.functions.jobAt(index).call)
        return Web3.to_checksum_address(address)

    async def workable(self, job_address: str, network_tag: bytes) -> tuple[bool, bytes]:
        contract = self._job_contract(job_address)
        can_work, args = await self._call("workable", contract.functions.workable(network_tag).call)
        return bool(can_work), bytes(args)

    def _job_contract(self, job_address: str) -> Any:
        contract = self._jobs.get(job_address)
        if contract is None:
            contract = self._w3.eth.contract(address=Web3.to_checksum_address(job_address), abi=WORKABLE_JOB_ABI)
            self._jobs[job_address] = contract
        return contract

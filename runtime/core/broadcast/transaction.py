"""Signed EIP-1559 transaction broadcaster.

Sends the work call as a regular transaction through the configured RPC:
- fee caps derive from the observed block's base fee plus a priority fee;
- if no receipt shows up within `receipt_timeout_seconds`, the transaction is
  replaced (same nonce) with a priority fee bumped by 12.5%, up to
  `burst_size` attempts;
- nonces are handed out under a lock that covers only the send, so receipts
  for different jobs are awaited concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from broadcast.interfaces import Broadcaster, WorkRequest
from chain.contracts import UPKEEP_JOB_ABI
from errors import BroadcastError

logger = logging.getLogger(__name__)

# Minimum replacement bump accepted by geth-style mempools is 10%.
REPLACEMENT_FEE_BUMP = 1.125


def compute_fee_caps(base_fee_per_gas: int | None, priority_fee_wei: int, attempt: int) -> tuple[int, int]:
    """Return (max_fee_per_gas, max_priority_fee_per_gas) for a given attempt number."""
    priority = math.ceil(priority_fee_wei * (REPLACEMENT_FEE_BUMP ** attempt))
    base = base_fee_per_gas or 0
    return 2 * base + priority, priority


class TransactionBroadcaster(Broadcaster):
    def __init__(
        self,
        *,
        w3: Web3,
        account: LocalAccount,
        chain_id: int,
        priority_fee_gwei: float,
        gas_limit: int,
        burst_size: int = 3,
        receipt_timeout_seconds: float = 36.0,
    ):
        self._w3 = w3
        self._account = account
        self._chain_id = chain_id
        self._priority_fee_wei = int(Web3.to_wei(priority_fee_gwei, "gwei"))
        self._gas_limit = gas_limit
        self._burst_size = max(1, burst_size)
        self._receipt_timeout = receipt_timeout_seconds
        # Held only while a nonce is picked and the transaction is sent; receipts are awaited outside it.
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: int | None = None

    async def broadcast(self, request: WorkRequest) -> bool:
        contract = self._w3.eth.contract(address=Web3.to_checksum_address(request.target), abi=UPKEEP_JOB_ABI)
        call = getattr(contract.functions, request.method)(*request.arguments)

        nonce: int | None = None
        for attempt in range(self._burst_size):
            max_fee, priority_fee = compute_fee_caps(request.block.base_fee_per_gas, self._priority_fee_wei, attempt)
            async with self._nonce_lock:
                if nonce is None:
                    nonce = await asyncio.to_thread(self._allocate_nonce)
                tx_hash = await asyncio.to_thread(self._submit, call, nonce=nonce, max_fee=max_fee, priority_fee=priority_fee)
                if self._next_nonce is None or self._next_nonce <= nonce:
                    self._next_nonce = nonce + 1
            logger.info(
                "work_tx_sent: %s attempt=%d",
                Web3.to_hex(tx_hash),
                attempt + 1,
                extra={"event": "work_tx_sent", "block": request.block.number, "job": _job_of(request)},
            )
            try:
                receipt = await asyncio.to_thread(
                    self._w3.eth.wait_for_transaction_receipt, tx_hash, timeout=self._receipt_timeout
                )
            except TimeExhausted:
                logger.warning(
                    "work_tx_pending: bumping fee",
                    extra={"event": "work_tx_pending", "block": request.block.number, "job": _job_of(request)},
                )
                continue
            return int(receipt["status"]) == 1

        return False

    def _allocate_nonce(self) -> int:
        # The node's pending count can lag our own sends; never reuse a nonce handed out locally.
        try:
            pending = self._w3.eth.get_transaction_count(self._account.address, "pending")
        except Exception as e:
            raise BroadcastError(f"Failed to fetch nonce: {e}") from e
        if self._next_nonce is None:
            return pending
        return max(pending, self._next_nonce)

    def _submit(self, call: Any, *, nonce: int, max_fee: int, priority_fee: int) -> bytes:
        try:
            tx = call.build_transaction(
                {
                    "chainId": self._chain_id,
                    "from": self._account.address,
                    "nonce": nonce,
                    "gas": self._gas_limit,
                    "maxFeePerGas": max_fee,
                    "maxPriorityFeePerGas": priority_fee,
                }
            )
            signed = self._account.sign_transaction(tx)
            return bytes(self._w3.eth.send_raw_transaction(signed.raw_transaction))
        except Exception as e:
            raise BroadcastError(f"Failed to submit work transaction: {e}", details={"nonce": nonce}) from e


def _job_of(request: WorkRequest) -> str | None:
    return str(request.arguments[0]) if request.arguments else None

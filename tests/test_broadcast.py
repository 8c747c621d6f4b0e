import asyncio
import threading
from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted

from broadcast.interfaces import WorkRequest
from broadcast.transaction import TransactionBroadcaster, compute_fee_caps
from chain.interfaces import Block
from errors import BroadcastError
from executor.job_runner import AttemptOutcome, JobRunner
from fakes import JOB_A, JOB_B, JOB_C, KEEP3R, UPKEEP, FakeChain

GWEI = 10**9


def test_fee_caps_double_base_fee_plus_priority() -> None:
    assert compute_fee_caps(10, 100, 0) == (120, 100)
    assert compute_fee_caps(None, 100, 0) == (100, 100)


def test_fee_caps_bump_priority_per_attempt() -> None:
    assert compute_fee_caps(10, 100, 1) == (133, 113)
    assert compute_fee_caps(10, 100, 2) == (147, 127)


def _request() -> WorkRequest:
    return WorkRequest(
        target=UPKEEP,
        method="work",
        arguments=(JOB_A, b"\x01"),
        block=Block(number=156, timestamp=1872, base_fee_per_gas=30 * GWEI),
    )


def _broadcaster(w3: MagicMock, account: MagicMock | None = None, **kwargs) -> TransactionBroadcaster:
    account = account or MagicMock()
    account.address = JOB_C
    return TransactionBroadcaster(
        w3=w3,
        account=account,
        chain_id=1,
        priority_fee_gwei=2,
        gas_limit=10_000_000,
        **kwargs,
    )


def _w3(receipts) -> MagicMock:
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = b"\xab" * 32
    w3.eth.wait_for_transaction_receipt.side_effect = receipts
    return w3


def _built(w3: MagicMock) -> list[dict]:
    work = w3.eth.contract.return_value.functions.work
    return [c.args[0] for c in work.return_value.build_transaction.call_args_list]


def test_included_transaction_reports_success() -> None:
    w3 = _w3([{"status": 1}])

    assert asyncio.run(_broadcaster(w3).broadcast(_request())) is True

    w3.eth.contract.return_value.functions.work.assert_called_once_with(JOB_A, b"\x01")
    [tx] = _built(w3)
    assert tx["nonce"] == 7
    assert tx["gas"] == 10_000_000
    assert tx["maxPriorityFeePerGas"] == 2 * GWEI
    assert tx["maxFeePerGas"] == 62 * GWEI
    w3.eth.get_transaction_count.assert_called_once_with(JOB_C, "pending")


def test_reverted_transaction_reports_failure() -> None:
    w3 = _w3([{"status": 0}])
    assert asyncio.run(_broadcaster(w3).broadcast(_request())) is False


def test_pending_transaction_is_replaced_with_bumped_fee() -> None:
    w3 = _w3([TimeExhausted(), {"status": 1}])

    assert asyncio.run(_broadcaster(w3).broadcast(_request())) is True

    first, second = _built(w3)
    assert first["nonce"] == second["nonce"] == 7
    assert second["maxPriorityFeePerGas"] == 2_250_000_000
    assert second["maxFeePerGas"] > first["maxFeePerGas"]


def test_burst_gives_up_after_configured_attempts() -> None:
    w3 = _w3([TimeExhausted(), TimeExhausted()])

    assert asyncio.run(_broadcaster(w3, burst_size=2).broadcast(_request())) is False
    assert len(_built(w3)) == 2


def test_send_failure_raises_broadcast_error() -> None:
    w3 = _w3([])
    w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")

    with pytest.raises(BroadcastError) as exc:
        asyncio.run(_broadcaster(w3).broadcast(_request()))
    assert exc.value.details == {"nonce": 7}


def test_nonce_failure_raises_broadcast_error() -> None:
    w3 = _w3([])
    w3.eth.get_transaction_count.side_effect = ConnectionError("rpc down")

    with pytest.raises(BroadcastError):
        asyncio.run(_broadcaster(w3).broadcast(_request()))
    w3.eth.send_raw_transaction.assert_not_called()


def _per_job_chain(on_receipt) -> tuple[MagicMock, MagicMock, list[int]]:
    """w3 and account doubles whose transaction hash is the job address, so receipts can be told apart."""
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 7
    nonces: list[int] = []

    def work(job, args):
        call = MagicMock()
        call.build_transaction.side_effect = lambda params: {**params, "to": job}
        return call

    w3.eth.contract.return_value.functions.work.side_effect = work
    w3.eth.send_raw_transaction.side_effect = lambda raw: raw
    w3.eth.wait_for_transaction_receipt.side_effect = lambda tx_hash, timeout: on_receipt(tx_hash.decode())

    account = MagicMock()

    def sign(tx):
        nonces.append(tx["nonce"])
        return MagicMock(raw_transaction=tx["to"].encode())

    account.sign_transaction.side_effect = sign
    return w3, account, nonces


def _request_for(job: str, number: int = 156) -> WorkRequest:
    return WorkRequest(target=UPKEEP, method="work", arguments=(job, b"\x01"), block=Block(number=number, base_fee_per_gas=GWEI))


def test_receipt_wait_does_not_block_other_jobs() -> None:
    second_confirmed = threading.Event()

    def on_receipt(job: str) -> dict:
        if job == JOB_A:
            return {"status": 1 if second_confirmed.wait(timeout=2) else 0}
        second_confirmed.set()
        return {"status": 1}

    w3, account, nonces = _per_job_chain(on_receipt)
    broadcaster = _broadcaster(w3, account)

    async def _run():
        return await asyncio.gather(broadcaster.broadcast(_request_for(JOB_A)), broadcaster.broadcast(_request_for(JOB_B)))

    assert asyncio.run(_run()) == [True, True]
    # Both sends landed before either receipt; the local counter keeps nonces distinct.
    assert sorted(nonces) == [7, 8]


def test_job_is_not_busy_while_another_job_awaits_its_receipt() -> None:
    release_a = threading.Event()

    def on_receipt(job: str) -> dict:
        if job == JOB_A:
            release_a.wait(timeout=2)
        return {"status": 1}

    w3, account, _ = _per_job_chain(on_receipt)
    runner = JobRunner(
        jobs=FakeChain(),
        broadcaster=_broadcaster(w3, account),
        network_tag=KEEP3R,
        upkeep_job_address=UPKEEP,
    )

    async def _run():
        slow = asyncio.create_task(runner.attempt(JOB_A, Block(number=156, base_fee_per_gas=GWEI)))
        fast = asyncio.create_task(runner.attempt(JOB_B, Block(number=156, base_fee_per_gas=GWEI)))
        first_b = await asyncio.wait_for(fast, timeout=1)
        next_b = await asyncio.wait_for(runner.attempt(JOB_B, Block(number=157, base_fee_per_gas=GWEI)), timeout=1)
        a_still_pending = runner.is_in_progress(JOB_A)
        release_a.set()
        return first_b, next_b, a_still_pending, await slow

    first_b, next_b, a_still_pending, a_outcome = asyncio.run(_run())
    assert first_b is AttemptOutcome.INCLUDED
    assert next_b is AttemptOutcome.INCLUDED
    assert a_still_pending
    assert a_outcome is AttemptOutcome.INCLUDED


def test_failed_send_does_not_consume_a_nonce() -> None:
    w3 = _w3([{"status": 1}])
    w3.eth.send_raw_transaction.side_effect = [ValueError("underpriced"), b"\xab" * 32]
    broadcaster = _broadcaster(w3)

    async def _run():
        try:
            await broadcaster.broadcast(_request())
        except BroadcastError:
            pass
        return await broadcaster.broadcast(_request())

    assert asyncio.run(_run()) is True
    assert [tx["nonce"] for tx in _built(w3)] == [7, 7]

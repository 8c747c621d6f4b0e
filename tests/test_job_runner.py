import asyncio

from chain.interfaces import Block
from errors import BroadcastError
from executor.job_runner import AttemptOutcome, JobRunner
from fakes import JOB_A, JOB_B, KEEP3R, UPKEEP, FakeBroadcaster, FakeChain
from protocol.jobs import TrackedJobs

BLOCK = Block(number=156, timestamp=1872, base_fee_per_gas=10)


def _runner(chain: FakeChain, broadcaster: FakeBroadcaster, tracked: TrackedJobs | None = None) -> JobRunner:
    return JobRunner(
        jobs=chain,
        broadcaster=broadcaster,
        network_tag=KEEP3R,
        upkeep_job_address=UPKEEP,
        job_token=tracked.token if tracked is not None else None,
    )


def test_workable_job_is_broadcast_with_work_call() -> None:
    chain = FakeChain()
    chain.workable_results[JOB_A] = (True, b"\xca\xfe")
    broadcaster = FakeBroadcaster()
    runner = _runner(chain, broadcaster)

    outcome = asyncio.run(runner.attempt(JOB_A, BLOCK))

    assert outcome is AttemptOutcome.INCLUDED
    [request] = broadcaster.requests
    assert request.target == UPKEEP
    assert request.method == "work"
    assert request.arguments == (JOB_A, b"\xca\xfe")
    assert request.block == BLOCK
    assert not runner.is_in_progress(JOB_A)


def test_not_workable_job_is_not_broadcast() -> None:
    chain = FakeChain()
    chain.workable_results[JOB_A] = (False, b"")
    broadcaster = FakeBroadcaster()
    runner = _runner(chain, broadcaster)

    assert asyncio.run(runner.attempt(JOB_A, BLOCK)) is AttemptOutcome.NOT_WORKABLE
    assert broadcaster.requests == []
    assert not runner.is_in_progress(JOB_A)


def test_simultaneous_attempts_broadcast_once() -> None:
    chain = FakeChain()

    async def _run():
        gate = asyncio.Event()
        broadcaster = FakeBroadcaster(gate=gate)
        runner = _runner(chain, broadcaster)
        first = asyncio.create_task(runner.attempt(JOB_A, BLOCK))
        second = asyncio.create_task(runner.attempt(JOB_A, BLOCK))
        await asyncio.sleep(0)
        busy_while_sending = runner.in_progress()
        gate.set()
        outcomes = await asyncio.gather(first, second)
        return outcomes, broadcaster, busy_while_sending

    outcomes, broadcaster, busy_while_sending = asyncio.run(_run())
    assert sorted(o.value for o in outcomes) == ["busy", "included"]
    assert len(broadcaster.requests) == 1
    assert busy_while_sending == [JOB_A]


def test_busy_job_does_not_block_other_jobs() -> None:
    chain = FakeChain()

    async def _run():
        gate = asyncio.Event()
        broadcaster = FakeBroadcaster(gate=gate)
        runner = _runner(chain, broadcaster)
        tasks = [asyncio.create_task(runner.attempt(job, BLOCK)) for job in (JOB_A, JOB_B)]
        await asyncio.sleep(0)
        gate.set()
        return await asyncio.gather(*tasks), broadcaster

    outcomes, broadcaster = asyncio.run(_run())
    assert outcomes == [AttemptOutcome.INCLUDED, AttemptOutcome.INCLUDED]
    assert {r.arguments[0] for r in broadcaster.requests} == {JOB_A, JOB_B}


def test_flag_is_cleared_after_broadcast_raises() -> None:
    chain = FakeChain()
    broadcaster = FakeBroadcaster(error=BroadcastError("relay unreachable"))
    runner = _runner(chain, broadcaster)

    async def _run():
        failed = await runner.attempt(JOB_A, BLOCK)
        flag_after = runner.is_in_progress(JOB_A)
        broadcaster.error = None
        retried = await runner.attempt(JOB_A, Block(number=157))
        return failed, flag_after, retried

    failed, flag_after, retried = asyncio.run(_run())
    assert failed is AttemptOutcome.BROADCAST_FAILED
    assert flag_after is False
    assert retried is AttemptOutcome.INCLUDED
    assert len(broadcaster.requests) == 2


def test_unexpected_broadcast_exception_is_contained() -> None:
    chain = FakeChain()
    broadcaster = FakeBroadcaster(error=KeyError("nonce"))
    runner = _runner(chain, broadcaster)

    assert asyncio.run(runner.attempt(JOB_A, BLOCK)) is AttemptOutcome.BROADCAST_FAILED
    assert not runner.is_in_progress(JOB_A)


def test_workable_read_failure_is_skipped() -> None:
    chain = FakeChain()
    chain.failing.add("workable")
    broadcaster = FakeBroadcaster()
    runner = _runner(chain, broadcaster)

    assert asyncio.run(runner.attempt(JOB_A, BLOCK)) is AttemptOutcome.READ_FAILED
    assert broadcaster.requests == []
    assert not runner.is_in_progress(JOB_A)


def test_not_included_is_reported() -> None:
    runner = _runner(FakeChain(), FakeBroadcaster(included=False))
    assert asyncio.run(runner.attempt(JOB_A, BLOCK)) is AttemptOutcome.NOT_INCLUDED


def test_removed_job_is_not_broadcast() -> None:
    tracked = TrackedJobs()
    tracked.add(JOB_A)
    tracked.remove(JOB_A)
    broadcaster = FakeBroadcaster()
    runner = _runner(FakeChain(), broadcaster, tracked)

    assert asyncio.run(runner.attempt(JOB_A, BLOCK)) is AttemptOutcome.REMOVED
    assert broadcaster.requests == []


def test_removal_mid_broadcast_still_clears_flag() -> None:
    tracked = TrackedJobs()
    tracked.add(JOB_A)
    chain = FakeChain()

    async def _run():
        gate = asyncio.Event()
        broadcaster = FakeBroadcaster(gate=gate)
        runner = _runner(chain, broadcaster, tracked)
        task = asyncio.create_task(runner.attempt(JOB_A, BLOCK))
        await asyncio.sleep(0)
        tracked.remove(JOB_A)
        gate.set()
        return await task, runner

    outcome, runner = asyncio.run(_run())
    assert outcome is AttemptOutcome.INCLUDED
    assert not runner.is_in_progress(JOB_A)


def test_finished_attempts_leave_no_flag_behind() -> None:
    tracked = TrackedJobs()
    tracked.add(JOB_A)
    tracked.add(JOB_B)
    runner = _runner(FakeChain(), FakeBroadcaster(), tracked)

    async def _run():
        await runner.attempt(JOB_A, BLOCK)
        tracked.remove(JOB_B)
        await runner.attempt(JOB_B, BLOCK)

    asyncio.run(_run())
    assert runner._in_progress == set()
    assert runner.in_progress() == []

# test/test_admission.py
from __future__ import annotations

import asyncio

import pytest

from safe_audit.admission import AdmissionController


async def _settle():
    # Let every runnable task advance to its next suspension point.
    for _ in range(5):
        await asyncio.sleep(0)


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        AdmissionController(0)


def test_max_plus_k_acquires_admit_max_and_queue_k():
    async def scenario():
        ctl = AdmissionController(2)
        tasks = [asyncio.create_task(ctl.acquire()) for _ in range(5)]
        await _settle()

        done = [t for t in tasks if t.done()]
        assert len(done) == 2
        assert ctl.in_flight == 2
        assert ctl.queued == 3

        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    asyncio.run(scenario())


def test_release_admits_exactly_one_waiter_in_fifo_order():
    async def scenario():
        ctl = AdmissionController(2)
        tasks = [asyncio.create_task(ctl.acquire()) for _ in range(5)]
        await _settle()

        held = [t.result() for t in tasks[:2]]
        assert [p.admitted_seq for p in held] == [1, 2]

        admitted = held[:]
        for step in range(3):
            ctl.release(admitted[step])
            await _settle()
            newly = [t for t in tasks[2:] if t.done() and t.result() not in admitted]
            assert len(newly) == 1
            admitted.append(newly[0].result())
            assert ctl.in_flight == 2

        # Submission order == admission order.
        tickets = [p.ticket for p in admitted]
        seqs = [p.admitted_seq for p in admitted]
        assert tickets == sorted(tickets)
        assert seqs == [1, 2, 3, 4, 5]

        for permit in admitted[3:]:
            ctl.release(permit)
        assert ctl.in_flight == 0
        assert ctl.queued == 0

    asyncio.run(scenario())


def test_newcomer_cannot_overtake_queued_waiter():
    async def scenario():
        ctl = AdmissionController(1)
        first = await ctl.acquire()
        waiter = asyncio.create_task(ctl.acquire())
        await _settle()

        ctl.release(first)
        # The freed slot already belongs to the waiter, so a newcomer queues.
        newcomer = asyncio.create_task(ctl.acquire())
        await _settle()

        assert waiter.done()
        assert not newcomer.done()
        ctl.release(waiter.result())
        await _settle()
        assert newcomer.done()
        ctl.release(newcomer.result())
        assert ctl.in_flight == 0

    asyncio.run(scenario())


def test_permit_state_machine():
    async def scenario():
        ctl = AdmissionController(1)
        permit = await ctl.acquire()
        assert permit.state == "holding"
        ctl.release(permit)
        assert permit.state == "released"
        with pytest.raises(RuntimeError):
            ctl.release(permit)

    asyncio.run(scenario())


def test_cancelled_waiter_leaves_queue():
    async def scenario():
        ctl = AdmissionController(1)
        first = await ctl.acquire()
        cancelled = asyncio.create_task(ctl.acquire())
        survivor = asyncio.create_task(ctl.acquire())
        await _settle()
        assert ctl.queued == 2

        cancelled.cancel()
        await _settle()
        assert ctl.queued == 1

        ctl.release(first)
        await _settle()
        assert survivor.done()
        assert ctl.in_flight == 1
        ctl.release(survivor.result())
        assert ctl.in_flight == 0

    asyncio.run(scenario())


def test_slot_handed_to_cancelled_waiter_is_passed_on():
    async def scenario():
        ctl = AdmissionController(1)
        first = await ctl.acquire()
        doomed = asyncio.create_task(ctl.acquire())
        next_in_line = asyncio.create_task(ctl.acquire())
        await _settle()

        # Hand the slot to ``doomed`` then cancel it before it resumes.
        ctl.release(first)
        doomed.cancel()
        await _settle()

        assert doomed.cancelled()
        assert next_in_line.done()
        assert ctl.in_flight == 1
        ctl.release(next_in_line.result())
        assert ctl.in_flight == 0

    asyncio.run(scenario())


def test_slot_context_manager_releases_on_error():
    async def scenario():
        ctl = AdmissionController(1)
        with pytest.raises(KeyError):
            async with ctl.slot():
                assert ctl.in_flight == 1
                raise KeyError("boom")
        assert ctl.in_flight == 0

    asyncio.run(scenario())


def test_concurrency_never_exceeds_capacity():
    async def scenario():
        ctl = AdmissionController(3)
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            async with ctl.slot():
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0)
                running -= 1

        await asyncio.gather(*(job() for _ in range(20)))
        assert peak == 3
        assert ctl.in_flight == 0

    asyncio.run(scenario())

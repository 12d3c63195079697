"""Test the mutation coordinator.
"""
import asyncio
import threading
from unittest import mock
import tempfile
import os

import pytest

from jsonlstore.coordinator import MutationCoordinator, MutationLane
from jsonlstore.model import JsonRecordCodec
from jsonlstore.reader import open_read
from jsonlstore.storeapi import RewriteFailed
import jsonlstore.coordinator


def _store_file(tmpdir, content=''):
    path = os.path.join(tmpdir, 'store.jsonl')
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    return path


def _records(path):
    with open_read(path) as reader:
        return [tuple(record) for record in reader.records()]


async def _settle_tasks():
    for _ in range(5):
        await asyncio.sleep(0)


def test_mutation_lane_drain():
    lane = MutationLane('set', apply=None)
    lane.push(1)
    lane.push(2)

    assert lane.drain() == [1, 2]
    assert lane.queue == []
    assert lane.drain() == []


def test_set_item_single():
    async def run(path):
        coord = MutationCoordinator(path)
        result = await coord.set_item('a', {'x': 1})
        assert result == {'x': 1}
        assert coord.passes == 1
        assert coord.write_busy is False
        assert coord.sets.busy is False

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        assert _records(path) == [('a', {'x': 1})]


def test_queued_sets_are_applied_in_one_pass():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()  # hold the file so the sets queue up

        tasks = [asyncio.ensure_future(coord.set_item(key, value))
                 for key, value in [('a', 1), ('b', 2), ('c', 3)]]
        await _settle_tasks()
        assert len(coord.sets.queue) == 3
        assert not any(t.done() for t in tasks)

        await coord._release_write()
        results = await asyncio.gather(*tasks)

        assert results == [1, 2, 3]
        assert coord.passes == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        assert _records(path) == [('a', 1), ('b', 2), ('c', 3)]


def test_last_write_wins_within_batch():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        first = asyncio.ensure_future(coord.set_item('a', 'first'))
        other = asyncio.ensure_future(coord.set_item('b', 'other'))
        second = asyncio.ensure_future(coord.set_item('a', 'second'))
        await _settle_tasks()

        await coord._release_write()
        assert await first == 'first'
        assert await second == 'second'
        await other
        assert coord.passes == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir, '{"key":"b","data":0}\n{"key":"a","data":0}\n')
        asyncio.run(run(path))
        # existing keys keep their position
        assert _records(path) == [('b', 'other'), ('a', 'second')]


def test_entries_queued_during_pass_go_to_next_pass():
    started = threading.Event()
    release = threading.Event()
    batches = []

    async def run(path):
        coord = MutationCoordinator(path)
        apply = coord.sets.apply

        def slow_apply(batch):
            batches.append([key for key, _, _ in batch])
            if len(batches) == 1:
                started.set()
                release.wait(5)
            apply(batch)

        coord.sets.apply = slow_apply

        loop = asyncio.get_running_loop()
        first = asyncio.ensure_future(coord.set_item('a', 1))
        await loop.run_in_executor(None, started.wait, 5)

        second = asyncio.ensure_future(coord.set_item('b', 2))
        third = asyncio.ensure_future(coord.set_item('c', 3))
        await _settle_tasks()
        assert not second.done()

        release.set()
        await asyncio.gather(first, second, third)
        assert coord.passes == 2

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        assert batches == [['a'], ['b', 'c']]
        assert _records(path) == [('a', 1), ('b', 2), ('c', 3)]


def test_failed_pass_fails_every_caller_in_batch():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        tasks = [asyncio.ensure_future(coord.set_item(key, 1)) for key in ('a', 'b')]
        await _settle_tasks()

        with mock.patch.object(jsonlstore.coordinator, 'rewrite') as m_rewrite:
            m_rewrite.side_effect = RewriteFailed('boom')
            await coord._release_write()
            results = await asyncio.gather(*tasks, return_exceptions=True)

        assert m_rewrite.call_count == 1
        assert all(isinstance(r, RewriteFailed) for r in results)
        assert coord.sets.queue == []
        assert coord.sets.busy is False
        assert coord.write_busy is False

        # not re-queued, the next call starts from a clean state
        await coord.set_item('c', 3)

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        assert _records(path) == [('c', 3)]


def test_remove_items_batched():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        tasks = [asyncio.ensure_future(coord.remove_item(key)) for key in ('a', 'c', 'missing')]
        await _settle_tasks()
        await coord._release_write()
        await asyncio.gather(*tasks)

        assert coord.passes == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir, '{"key":"a","data":1}\n{"key":"b","data":2}\n{"key":"c","data":3}\n')
        asyncio.run(run(path))
        assert _records(path) == [('b', 2)]


def test_sets_and_removes_use_separate_passes():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        tasks = [asyncio.ensure_future(coord.set_item('b', 2)),
                 asyncio.ensure_future(coord.remove_item('a'))]
        await _settle_tasks()
        assert coord.sets.busy and coord.removals.busy

        await coord._release_write()
        await asyncio.gather(*tasks)

        assert coord.passes == 2

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir, '{"key":"a","data":1}\n')
        asyncio.run(run(path))
        assert _records(path) == [('b', 2)]


def test_wait_for_write_blocks_until_released():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        waiter = asyncio.ensure_future(coord.wait_for_write())
        await _settle_tasks()
        assert not waiter.done()

        await coord._release_write()
        await asyncio.wait_for(waiter, 1)

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(run(_store_file(tmpdir)))


def test_clear_waits_for_in_flight_pass():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()

        setter = asyncio.ensure_future(coord.set_item('b', 2))
        await _settle_tasks()
        clearer = asyncio.ensure_future(coord.clear())
        await _settle_tasks()
        assert not clearer.done()

        await coord._release_write()
        await asyncio.gather(setter, clearer)

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir, '{"key":"a","data":1}\n')
        asyncio.run(run(path))
        assert _records(path) == []
        assert os.path.isfile(path)


def test_invalid_key_rejected():
    async def run(path):
        coord = MutationCoordinator(path)
        for key in (['a'], ('a', 1), {'a': 1}, float('nan')):
            with pytest.raises(TypeError):
                await coord.set_item(key, 1)
            with pytest.raises(TypeError):
                await coord.remove_item(key)
        assert coord.sets.queue == [] and coord.removals.queue == []
        assert coord.passes == 0

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(run(_store_file(tmpdir)))


def test_unserializable_value_fails_only_its_caller():
    async def run(path):
        coord = MutationCoordinator(path)
        with pytest.raises(TypeError):
            await coord.set_item('a', object())
        assert coord.sets.queue == []
        assert coord.passes == 0

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(run(_store_file(tmpdir)))


@mock.patch.object(JsonRecordCodec, 'encode')
def test_set_item_uses_codec(m_encode):
    m_encode.return_value = '{"key":"k","data":"encoded"}'

    async def run(path):
        coord = MutationCoordinator(path, codec=JsonRecordCodec())
        await coord.set_item('k', 'plain')

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        assert m_encode.call_count == 1
        assert _records(path) == [('k', 'encoded')]


def test_numeric_and_boolean_keys_are_distinct():
    async def run(path):
        coord = MutationCoordinator(path)
        await coord._acquire_write()
        tasks = [asyncio.ensure_future(coord.set_item(key, value))
                 for key, value in [(1, 'int'), (True, 'bool'), (1.0, 'float'), ('1', 'str')]]
        await _settle_tasks()
        await coord._release_write()
        await asyncio.gather(*tasks)

        await coord.set_item(True, 'bool again')
        await coord.remove_item(1.0)

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        records = _records(path)
        assert [(type(k), k, v) for k, v in records] == [(int, 1, 'int'), (bool, True, 'bool again'),
                                                          (str, '1', 'str')]


def _slow_lanes(coord, started, release):
    """Blocks the first pass of the coordinator until ``release`` is set, and tracks how
    many passes run at the same time."""
    lock = threading.Lock()
    active = [0]
    overlaps = []

    def track(apply):
        def wrapper(batch):
            with lock:
                active[0] += 1
                overlaps.append(active[0])
            try:
                if not started.is_set():
                    started.set()
                    release.wait(5)
                apply(batch)
            finally:
                with lock:
                    active[0] -= 1
        return wrapper

    coord.sets.apply = track(coord.sets.apply)
    coord.removals.apply = track(coord.removals.apply)
    return overlaps


def test_cancelled_caller_does_not_interrupt_pass():
    started = threading.Event()
    release = threading.Event()

    async def run(path):
        coord = MutationCoordinator(path)
        overlaps = _slow_lanes(coord, started, release)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coord.set_item('a', 1), 0.05)
        assert started.is_set()
        # the pass is still running in the executor
        assert coord.write_busy is True

        tasks = [asyncio.ensure_future(coord.set_item('b', 2)),
                 asyncio.ensure_future(coord.remove_item('x'))]
        await _settle_tasks()
        assert not any(t.done() for t in tasks)

        release.set()
        await asyncio.wait_for(asyncio.gather(*tasks), 5)

        assert max(overlaps) == 1
        assert coord.passes == 3
        assert coord.write_busy is False
        assert not coord.sets.busy and not coord.removals.busy

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir, '{"key":"x","data":0}\n')
        asyncio.run(run(path))
        assert _records(path) == [('a', 1), ('b', 2)]


def test_cancelled_driver_holds_write_lock_until_pass_ends():
    started = threading.Event()
    release = threading.Event()

    async def run(path):
        coord = MutationCoordinator(path)
        _slow_lanes(coord, started, release)
        loop = asyncio.get_running_loop()

        setter = asyncio.ensure_future(coord.set_item('a', 1))
        await loop.run_in_executor(None, started.wait, 5)
        queued = asyncio.ensure_future(coord.set_item('b', 2))
        await _settle_tasks()

        coord.sets.driver.cancel()
        await _settle_tasks()
        assert coord.write_busy is True
        assert not setter.done()

        release.set()
        with pytest.raises(asyncio.CancelledError):
            await setter
        with pytest.raises(asyncio.CancelledError):
            await queued

        await asyncio.wait_for(coord.wait_for_write(), 5)
        assert coord.sets.busy is False
        assert coord.sets.queue == []

        # the coordinator keeps working after the cancelled driver
        await coord.set_item('c', 3)

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        # the pass that was running when the driver was cancelled still completed
        assert _records(path) == [('a', 1), ('c', 3)]


def test_write_lock_released_between_passes():
    started = threading.Event()
    release = threading.Event()

    async def run(path):
        coord = MutationCoordinator(path)
        _slow_lanes(coord, started, release)
        loop = asyncio.get_running_loop()

        first = asyncio.ensure_future(coord.set_item('a', 1))
        await loop.run_in_executor(None, started.wait, 5)

        second = asyncio.ensure_future(coord.set_item('b', 2))
        await _settle_tasks()
        clearer = asyncio.ensure_future(coord.clear())
        await _settle_tasks()

        release.set()
        await asyncio.wait_for(asyncio.gather(first, second, clearer), 5)
        assert coord.passes == 2

    with tempfile.TemporaryDirectory() as tmpdir:
        path = _store_file(tmpdir)
        asyncio.run(run(path))
        # clear got in between the two set passes
        assert _records(path) == [('b', 2)]

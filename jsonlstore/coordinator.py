"""
----------------------
jsonlstore.coordinator
----------------------

Serializes the mutations of a store file.

The :class:`MutationCoordinator` makes sure that at most one rewrite pass runs
against the store file at any time, and batches the mutations that queue up while
a pass is running into a single following pass.

There are two independent lanes - one for ``set`` and one for ``remove`` - each with
its own queue. The first caller that finds its lane idle starts a *driver* task for
the lane: the driver takes the write lock of the store, drains everything queued so
far into one rewrite pass, releases the lock, and repeats until the queue is empty.
Releasing the lock between passes lets readers, ``clear`` and the other lane in
between, so a busy lane cannot starve them. Callers wait until the pass that applied
their entry completes. Sets and removes never share a pass.

The driver is a task of its own, so cancelling a caller (for example with
:func:`asyncio.wait_for`) never interrupts a pass: the queued entry is still applied,
and the write lock is held until the rewrite running in the executor is done.

Readers call :meth:`MutationCoordinator.wait_for_write` before opening the store
file, so they never open it while a rewrite is in flight.

The coordinator is built for a single asyncio event loop. The state is only touched
from the loop thread; the rewrite passes themselves run in an executor so the loop
stays responsive while large files are rewritten.
"""
import asyncio
from functools import partial
from logging import getLogger

from jsonlstore.model import JsonRecordCodec, check_key, is_valid_key, key_id
from jsonlstore.rewrite import rewrite, replace_with_empty


log = getLogger(__name__)


class MutationLane:
    """A queue of pending mutations of one kind, and the flag marking an active driver.

    :param kind: ``str``, name of the mutation kind (used in log messages).
    :param apply: ``function``, applies a drained batch to the store file. Runs in the
        executor.
    """
    def __init__(self, kind, apply):
        self.kind = kind
        self.apply = apply
        self.queue = []
        self.busy = False
        self.driver = None

    def push(self, entry):
        self.queue.append(entry)

    def drain(self):
        """Removes and returns everything currently queued."""
        batch = self.queue[:]
        del self.queue[:]
        return batch


class MutationCoordinator:
    """Coordinates the rewrite passes of one store file.

    :param path: ``str``, path to the store file.
    :param codec: the line codec. Defaults to :class:`jsonlstore.model.JsonRecordCodec`.
    :param encoding: ``str``, the file encoding.
    :param fsync: ``bool``, sync the rewritten file to disk before swapping it in.
    :param executor: :class:`concurrent.futures.Executor`, executor that runs the
        rewrite passes. ``None`` uses the default executor of the event loop.
    """
    def __init__(self, path, codec=None, encoding='utf-8', fsync=False, executor=None):
        self.path = path
        self.codec = codec or JsonRecordCodec()
        self.encoding = encoding
        self.fsync = fsync
        self.executor = executor
        self.sets = MutationLane('set', self._apply_sets)
        self.removals = MutationLane('remove', self._apply_removals)
        self.write_busy = False
        self.passes = 0
        self._write_cond = None
        self._loop = None

    @property
    def write_cond(self):
        # bound to the running loop; a store reused from a new loop gets a new wait-list
        loop = asyncio.get_running_loop()
        if self._write_cond is None or self._loop is not loop:
            self._write_cond = asyncio.Condition()
            self._loop = loop
        return self._write_cond

    async def wait_for_write(self):
        """Waits until no rewrite pass is in flight.
        """
        async with self.write_cond:
            await self.write_cond.wait_for(lambda: not self.write_busy)

    async def _acquire_write(self):
        async with self.write_cond:
            await self.write_cond.wait_for(lambda: not self.write_busy)
            self.write_busy = True

    async def _release_write(self):
        async with self.write_cond:
            self.write_busy = False
            self.write_cond.notify_all()

    async def set_item(self, key, value):
        """Queues ``value`` to be stored under ``key`` and waits until it is written.

        The key is checked and the value is encoded right away, so an invalid key or an
        unserializable value fails only this call (with ``TypeError``) and never the
        batch it would have joined.

        Returns the ``value``. If another caller set the same key in the same batch
        after this call, the value of the later call is the one persisted.

        Raises :class:`jsonlstore.storeapi.RewriteFailed` if the pass that should have
        applied this entry fails.
        """
        check_key(key)
        line = self.codec.encode(key, value)
        future = asyncio.get_running_loop().create_future()
        self.sets.push((key, line, future))
        self._ensure_driver(self.sets)
        await future
        return value

    async def remove_item(self, key):
        """Queues the removal of ``key`` and waits until it is applied.

        Raises :class:`jsonlstore.storeapi.RewriteFailed` if the pass that should have
        applied this removal fails.
        """
        check_key(key)
        future = asyncio.get_running_loop().create_future()
        self.removals.push((key, future))
        self._ensure_driver(self.removals)
        await future

    async def clear(self):
        """Replaces the store file with an empty file.

        Does not go through the queues, but waits for any in-flight pass and holds the
        write lock while the file is swapped.
        """
        await self._acquire_write()
        try:
            await self._run_to_end(partial(replace_with_empty, self.path,
                                           encoding=self.encoding, fsync=self.fsync))
            log.info('Cleared %s', self.path)
        finally:
            await self._release_write()

    def _ensure_driver(self, lane):
        if lane.busy:
            return
        lane.busy = True
        lane.driver = asyncio.ensure_future(self._drive(lane))

    async def _drive(self, lane):
        try:
            while True:
                await self._acquire_write()
                error = None
                try:
                    batch = lane.drain()
                    futures = [entry[-1] for entry in batch]
                    self.passes += 1
                    log.debug('Running %s pass #%d on %s with %d queued entries', lane.kind,
                              self.passes, self.path, len(batch))
                    try:
                        await self._run_to_end(partial(lane.apply, batch))
                    except asyncio.CancelledError:
                        _cancel(futures)
                        raise
                    except Exception as e:
                        log.error('%s pass on %s failed, %d entries dropped. Error: %s',
                                  lane.kind, self.path, len(batch), e)
                        error = e
                finally:
                    await self._release_write()

                if not lane.queue:
                    # no suspension between the empty-queue check and this reset
                    lane.busy = False
                    _settle(futures, error)
                    return
                _settle(futures, error)
                # let waiting readers, clear() and the other lane in before the next pass
                await asyncio.sleep(0)
        except BaseException:
            lane.busy = False
            _cancel([entry[-1] for entry in lane.drain()])
            raise

    async def _run_to_end(self, func):
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(self.executor, func)
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            # the executor cannot be interrupted; keep the write lock until it is done
            await asyncio.wait([pending])
            raise

    def _apply_sets(self, batch):
        pending = {}
        for key, line, _ in batch:
            pending[key_id(key)] = line

        def patch(key, line):
            if is_valid_key(key):
                return pending.pop(key_id(key), line)
            return line

        def finalize():
            return list(pending.values())

        rewrite(self.path, patch, finalize=finalize, codec=self.codec,
                encoding=self.encoding, fsync=self.fsync)

    def _apply_removals(self, batch):
        removed = set(key_id(key) for key, _ in batch)

        def patch(key, line):
            if is_valid_key(key) and key_id(key) in removed:
                return None
            return line

        rewrite(self.path, patch, codec=self.codec, encoding=self.encoding, fsync=self.fsync)


def _settle(futures, error=None):
    for future in futures:
        if future.done():
            continue
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)


def _cancel(futures):
    for future in futures:
        if not future.done():
            future.cancel()

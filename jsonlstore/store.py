"""
----------------
jsonlstore.store
----------------

JSON Lines backed key/value store.

The store keeps all records in one plain text file, one JSON object per line. The
file is never loaded in memory as a whole - every read streams it line by line,
and every write streams it into a new file that then replaces the old one. See
:mod:`jsonlstore.rewrite` and :mod:`jsonlstore.coordinator` for the details of the
write path.

The store is asynchronous and is used from an asyncio event loop:

.. code-block:: python

    import asyncio
    from jsonlstore.store import JsonlStorage

    async def main():
        store = JsonlStorage(name='sessions', folder='./data')

        await store.set_item('user:1', {'name': 'Ana'})
        await store.set_item('user:2', {'name': 'Bo'})

        print(await store.get_item('user:1'))
        print(await store.keys())

        await store.iterate(lambda value, key: print(key, value))

    asyncio.run(main())

would print::

    >> {'name': 'Ana'}
    >> ['user:1', 'user:2']
    >> user:1 {'name': 'Ana'}
    >> user:2 {'name': 'Bo'}

Concurrent ``set_item`` (or ``remove_item``) calls are batched into as few rewrites
of the file as possible. All store handles opened on the same file within one process
share one :class:`jsonlstore.coordinator.MutationCoordinator`, so they are coordinated
with each other as well. Only callers within one process (and one event loop) are
coordinated - two processes writing the same store file will corrupt it.
"""
import asyncio
import inspect
import os
import weakref
from itertools import islice
from logging import getLogger

from jsonlstore.config import resolve_path, ensure_file, load_options
from jsonlstore.coordinator import MutationCoordinator
from jsonlstore.model import JsonRecordCodec, key_id
from jsonlstore.reader import open_read
from jsonlstore.storeapi import KeyValueStore, ConfigurationError


log = getLogger(__name__)


ITERATE_CHUNK = 256
"""Number of records read in the executor at a time by :meth:`JsonlStorage.iterate`."""

_coordinators = weakref.WeakValueDictionary()


def coordinator_for(path, codec, encoding='utf-8', fsync=False, executor=None):
    """Returns the :class:`MutationCoordinator` for the store file at ``path``.

    Handles on the same file (compared by absolute path) get the same coordinator for as
    long as any of them is alive. Raises :class:`jsonlstore.storeapi.ConfigurationError`
    if the file is already open with another encoding or another type of codec.
    """
    abs_path = os.path.abspath(path)
    coordinator = _coordinators.get(abs_path)
    if coordinator is None:
        coordinator = MutationCoordinator(path, codec=codec, encoding=encoding, fsync=fsync,
                                          executor=executor)
        _coordinators[abs_path] = coordinator
        return coordinator

    if coordinator.encoding != encoding:
        raise ConfigurationError('%s is already open with encoding %s' % (path, coordinator.encoding))
    if type(coordinator.codec) is not type(codec):
        raise ConfigurationError('%s is already open with codec %s' %
                                 (path, type(coordinator.codec).__name__))
    log.debug('Sharing the write coordinator of %s', abs_path)
    return coordinator


class JsonlStorage(KeyValueStore):
    """A :class:`jsonlstore.storeapi.KeyValueStore` that keeps the records in a JSON Lines file.

    The store file is created (empty) if it does not exist.

    :param name: ``str``, the name of the store. The file is named ``<name>.jsonl``.
    :param folder: ``str``, optional directory for the store file.
    :param codec: optional line codec; defaults to :class:`jsonlstore.model.JsonRecordCodec`.
    :param encoding: ``str``, the file encoding. Default is ``utf-8``.
    :param fsync: ``bool``, sync the rewritten file to disk before swapping it in.
    :param executor: :class:`concurrent.futures.Executor` for the file I/O. ``None`` uses
        the default executor of the running event loop.
    """
    def __init__(self, name, folder=None, codec=None, encoding='utf-8', fsync=False, executor=None):
        self.name = name
        self.folder = folder
        self.path = resolve_path(name, folder)
        self.codec = codec or JsonRecordCodec()
        self.encoding = encoding
        self.executor = executor
        ensure_file(self.path)
        self.coordinator = coordinator_for(self.path, self.codec, encoding=encoding,
                                           fsync=fsync, executor=executor)
        log.debug('Store %s bound to %s', name, self.path)

    @classmethod
    def from_options(cls, options, **kwargs):
        """Creates a store from :class:`jsonlstore.config.StoreOptions`.
        """
        return cls(name=options.name, folder=options.folder, encoding=options.encoding,
                   fsync=options.fsync, **kwargs)

    @classmethod
    def from_config(cls, config_file, **kwargs):
        """Creates a store from a YAML configuration file. See :mod:`jsonlstore.config`.
        """
        return cls.from_options(load_options(config_file), **kwargs)

    async def _open(self):
        await self.coordinator.wait_for_write()
        # opened on the loop thread, so no rewrite can swap the file in between
        return open_read(self.path, self.codec, self.encoding)

    async def _scan(self, func):
        reader = await self._open()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, _with_reader, reader, func)

    async def get_item(self, key, default=None):
        """Looks up the value stored under ``key``.

        Stops reading at the first matching record. Returns ``default`` if there is no
        record with this key.
        """
        wanted = key_id(key)

        def find(records):
            for record in records:
                if key_id(record.key) == wanted:
                    return record.value
            return default
        return await self._scan(find)

    async def set_item(self, key, value):
        """Stores ``value`` under ``key``. See :meth:`MutationCoordinator.set_item`.
        """
        return await self.coordinator.set_item(key, value)

    async def remove_item(self, key):
        """Removes the record with ``key``. See :meth:`MutationCoordinator.remove_item`.
        """
        await self.coordinator.remove_item(key)

    async def key(self, index):
        """Returns the key of the record at the 1-based position ``index``, or ``None``.
        """
        if index < 1:
            return None

        def find(records):
            for position, record in enumerate(records, start=1):
                if position == index:
                    return record.key
            return None
        return await self._scan(find)

    async def keys(self):
        return await self._scan(lambda records: [record.key for record in records])

    async def length(self):
        return await self._scan(lambda records: sum(1 for _ in records))

    async def iterate(self, callback):
        """Calls ``callback(value, key)`` for each record, in file order.

        The file is read and decoded in the executor, ``ITERATE_CHUNK`` records at a
        time. The callback runs on the event loop. If it returns an awaitable, the
        awaitable is awaited before moving to the next record.
        """
        reader = await self._open()
        loop = asyncio.get_running_loop()
        with reader:
            records = reader.records()
            while True:
                chunk = await loop.run_in_executor(self.executor, _next_chunk, records)
                if not chunk:
                    break
                for record in chunk:
                    result = callback(record.value, record.key)
                    if inspect.isawaitable(result):
                        await result

    async def clear(self):
        await self.coordinator.clear()

    async def close(self):
        """Waits for any in-flight rewrite to complete.

        The store holds no open files between operations, so there is nothing else to
        release.
        """
        await self.coordinator.wait_for_write()
        log.debug('Store %s closed', self.name)

    def __repr__(self):
        return 'JsonlStorage<%s @ %s>' % (self.name, self.path)


def _with_reader(reader, func):
    with reader:
        return func(reader.records())


def _next_chunk(records):
    return list(islice(records, ITERATE_CHUNK))

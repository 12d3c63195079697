"""
-------------------
jsonlstore.storeapi
-------------------

Key/Value Store API
^^^^^^^^^^^^^^^^^^^

Defines classes, methods and exceptions to be used when implementing a Key/Value Store.
"""
from abc import abstractmethod


class KeyValueStore:
    """KeyValueStore is the basic interface for interaction with the stored records.

    The API mirrors the familiar ``localStorage`` surface: point lookups, positional
    lookups, listing and iteration, plus set/remove/clear mutations. All operations
    are coroutines and must be awaited on the event loop that owns the store.

    Implementations guarantee that the read operations never observe a half-applied
    mutation - a read sees the state of the store either before or after any given
    write.
    """
    @abstractmethod
    async def get_item(self, key, default=None):
        """Looks up the value stored under ``key``.

        :param key: the key to look up. Must be JSON-serializable and hashable.
        :param default: value to return if there is no record for ``key``.

        Returns the stored value, or ``default`` if no such record exists.
        """
        pass

    @abstractmethod
    async def set_item(self, key, value):
        """Stores ``value`` under ``key``, replacing any previous value.

        This method is atomic in the sense that the underlying storage will either
        contain the complete new state or will be left untouched on failure.

        :param key: the key of the record.
        :param value: the value, any JSON-serializable object.

        Returns the ``value`` that was given.
        """
        pass

    @abstractmethod
    async def remove_item(self, key):
        """Removes the record stored under ``key``. Removing a missing key is not an error.

        :param key: the key of the record to be removed.

        This method does not return any value.
        """
        pass

    @abstractmethod
    async def key(self, index):
        """Positional lookup of a key.

        :param index: ``int``, 1-based position of the record in the store.

        Returns the key at that position, or ``None`` if ``index`` is out of range.
        """
        pass

    @abstractmethod
    async def keys(self):
        """Returns a ``list`` of all keys, in store order.
        """
        pass

    @abstractmethod
    async def length(self):
        """Returns the number of records in the store.
        """
        pass

    @abstractmethod
    async def iterate(self, callback):
        """Calls ``callback(value, key)`` for every record in store order.

        :param callback: ``function``, called with the value and the key of each record.
        """
        pass

    @abstractmethod
    async def clear(self):
        """Removes all records from the store.
        """
        pass

    @abstractmethod
    async def close(self):
        """Close and cleanup the underlying store.
        """
        pass


class StoreException(Exception):
    """General store error.
    """
    pass


class StoreReadException(StoreException):
    """Represents an error while reading records from the underlying storage.
    """
    pass


class StoreWriteException(StoreException):
    """Represents an error while writing records to the underlying storage.
    """
    pass


class MalformedRecord(StoreReadException):
    """Raised when a line in the store file cannot be decoded as a record.

    :param message: ``str``, description of the problem.
    :param line: ``str``, the offending line (if known).
    :param lineno: ``int``, 1-based line number in the store file (if known).
    """
    def __init__(self, message, line=None, lineno=None):
        if lineno is not None:
            message = 'line %d: %s' % (lineno, message)
        super(MalformedRecord, self).__init__(message)
        self.line = line
        self.lineno = lineno


class IOFailure(StoreException):
    """Raised when the store file cannot be accessed (missing file, permissions, full disk).
    """
    pass


class RewriteFailed(StoreWriteException):
    """Raised when a rewrite pass fails. The original store file is left untouched.

    The underlying error (:class:`MalformedRecord`, :class:`IOFailure` or other) is
    available as ``__cause__``.
    """
    pass


class ConfigurationError(StoreException):
    """Raised when the store configuration is invalid.
    """
    pass

"""
----------------
jsonlstore.model
----------------

Record model and the line codec.

Each record is stored as one line holding a JSON object with two fields:
``key`` and ``data``. For example::

    {"key":"user:1","data":{"name":"Ana","age":31}}

The codec is split, like the rest of the store, into a serializer (record -> line)
and a parser (line -> record). :class:`JsonRecordCodec` combines both and is the
default codec of the store. Custom codecs (for example compressed or encrypted
lines) only need to provide ``encode(key, value)`` and ``decode(line)``.
"""
import json
from collections import namedtuple

from jsonlstore.storeapi import MalformedRecord


Record = namedtuple('Record', ['key', 'value'])
"""A single key/value pair, as stored on one line of the store file.
"""

Record.key.__doc__ = """
    The record key. One of ``str``, ``int``, ``float``, ``bool`` or ``None``.
"""

Record.value.__doc__ = """
    The record value. Any JSON-serializable object.
"""


KEY_FIELD = 'key'
DATA_FIELD = 'data'


class RecordSerializer:
    """Serializes a key and a value into a single line (without the trailing newline).

    The produced line never contains a newline character: JSON escapes newlines
    inside strings.
    """

    def serialize(self, key, value):
        return json.dumps({KEY_FIELD: key, DATA_FIELD: value}, ensure_ascii=False,
                          separators=(',', ':'))


class RecordParser:
    """Parses a :class:`Record` out of a single line.
    """

    def parse(self, line):
        """Parses one line into a :class:`Record`.

        :param line: ``str``, the line to parse. A trailing newline is ignored.

        Raises :class:`jsonlstore.storeapi.MalformedRecord` if the line is not valid
        JSON, is not a JSON object or is missing one of the ``key`` and ``data`` fields.
        """
        line = line.rstrip('\r\n')
        try:
            obj = json.loads(line)
        except ValueError as e:
            raise MalformedRecord('invalid JSON: %s' % e, line=line) from e

        if not isinstance(obj, dict):
            raise MalformedRecord('expected a JSON object', line=line)
        for field in (KEY_FIELD, DATA_FIELD):
            if field not in obj:
                raise MalformedRecord('missing "%s" field' % field, line=line)

        return Record(key=obj[KEY_FIELD], value=obj[DATA_FIELD])


class JsonRecordCodec:
    """The default line codec: one compact JSON object per line.

    :param serializer: :class:`RecordSerializer`, optional serializer to use.
    :param parser: :class:`RecordParser`, optional parser to use.
    """

    def __init__(self, serializer=None, parser=None):
        self.serializer = serializer or RecordSerializer()
        self.parser = parser or RecordParser()

    def encode(self, key, value):
        """Encodes the key and value into one line (without the trailing newline).
        """
        return self.serializer.serialize(key, value)

    def decode(self, line):
        """Decodes one line into a :class:`Record`.

        Raises :class:`jsonlstore.storeapi.MalformedRecord` if the line cannot be decoded.
        """
        return self.parser.parse(line)


KEY_TYPES = (str, int, float, bool, type(None))


def is_valid_key(key):
    """Checks if ``key`` can be used as a record key.

    Only JSON scalars survive a trip through the store file unchanged, so keys must be
    exactly ``str``, ``int``, ``float``, ``bool`` or ``None`` (subclasses and NaN are
    rejected).
    """
    if type(key) not in KEY_TYPES:
        return False
    return key == key


def check_key(key):
    """Raises ``TypeError`` if ``key`` is not a valid record key. See :func:`is_valid_key`.
    """
    if not is_valid_key(key):
        raise TypeError('record keys must be str, int, float, bool or None, got %r' % (key,))


def key_id(key):
    """Returns the identity of a key, used when matching records.

    Keys match only when both the JSON type and the value are equal, so ``1``, ``1.0``
    and ``True`` are three different keys.
    """
    return (type(key), key)

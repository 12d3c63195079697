"""
-----------------
jsonlstore.reader
-----------------

Streaming reader for the store file.

The reader never loads the whole file: it reads one line at a time from an open
text stream and decodes it with the store codec. A malformed line stops the read
with :class:`jsonlstore.storeapi.MalformedRecord` - bad lines are never skipped.
"""
from logging import getLogger

from jsonlstore.model import JsonRecordCodec
from jsonlstore.storeapi import IOFailure, MalformedRecord


log = getLogger(__name__)


class SequentialRecordReader:
    """Reads records (:class:`jsonlstore.model.Record`) from an open text stream.

    Uses a codec (by default :class:`jsonlstore.model.JsonRecordCodec`) to decode
    each line.

    This reader implements the context manager interface and can be used in ``with``
    statements. For example:

    .. code-block:: python

        with open_read('store.jsonl') as reader:
            for record in reader.records():
                print(record.key, record.value)

    :param stream: text stream to read lines from.
    :param codec: the codec used for decoding the lines.
    """
    def __init__(self, stream, codec=None):
        self.stream = stream
        self.codec = codec or JsonRecordCodec()

    def lines(self):
        """Iterates over the raw lines in the stream, yielding ``(lineno, line)``.

        ``lineno`` is 1-based. The trailing newline is stripped from each line.
        """
        lineno = 0
        while True:
            lineno += 1
            try:
                line = self.stream.readline()
            except UnicodeDecodeError as e:
                raise MalformedRecord('cannot decode line: %s' % e, lineno=lineno) from e
            except OSError as e:
                raise IOFailure('read failed: %s' % e) from e
            if not line:
                break
            yield lineno, line.rstrip('\r\n')

    def records(self):
        """Reads the records from the stream.

        Returns an iterator that yields :class:`jsonlstore.model.Record` as the lines
        are read. The iterator stops at the end of the stream.
        """
        for lineno, line in self.lines():
            yield decode_line(self.codec, line, lineno)

    def close(self):
        self.stream.close()

    def __enter__(self):
        """Implements the context-manager enter method.
        Returns a reference to itself.
        """
        return self

    def __exit__(self, *args):
        """Implements the context-manager exiting method.
        Closes the underlying stream.
        """
        self.close()


def decode_line(codec, line, lineno):
    """Decodes one line with ``codec.decode(line)``.

    Errors raised by the codec are reported as
    :class:`jsonlstore.storeapi.MalformedRecord` carrying the 1-based ``lineno``.
    """
    try:
        return codec.decode(line)
    except MalformedRecord as e:
        if e.lineno is not None:
            raise
        raise MalformedRecord(str(e), line=line, lineno=lineno) from e
    except ValueError as e:
        raise MalformedRecord(str(e), line=line, lineno=lineno) from e


def open_read(path, codec=None, encoding='utf-8'):
    """Opens the store file at ``path`` for streaming.

    Each call opens a new stream, so the records can be read again from the start by
    calling this function again.

    :param path: ``str``, path to the store file.
    :param codec: the line codec. Defaults to :class:`jsonlstore.model.JsonRecordCodec`.
    :param encoding: ``str``, the file encoding.

    Returns a :class:`SequentialRecordReader` over the opened file. Raises
    :class:`jsonlstore.storeapi.IOFailure` if the file cannot be opened.
    """
    try:
        stream = open(path, 'r', encoding=encoding)
    except OSError as e:
        log.error('Unable to open %s for reading. Error: %s', path, e)
        raise IOFailure('cannot open %s: %s' % (path, e)) from e
    return SequentialRecordReader(stream, codec)

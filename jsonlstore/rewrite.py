"""
------------------
jsonlstore.rewrite
------------------

The rewrite engine.

Every mutation of the store file is done by a rewrite pass: the old file is streamed
line by line into a new temporary file, with a patch callback deciding what happens
to each line, and then the temporary file atomically replaces the old one.

The temporary file lives in the same directory as the store file (``name.jsonl`` is
rewritten into ``name-temp.jsonl``), so the final rename never crosses a file-system
boundary. On failure the temporary file is removed and the original file is left as
it was.

Example - upper-case all values of a store:

.. code-block:: python

    codec = JsonRecordCodec()

    def patch(key, line):
        value = codec.decode(line).value
        return codec.encode(key, value.upper())

    rewrite('store.jsonl', patch, codec=codec)

"""
import os
from logging import getLogger

from jsonlstore.model import JsonRecordCodec
from jsonlstore.reader import open_read, decode_line
from jsonlstore.storeapi import RewriteFailed, StoreException


log = getLogger(__name__)


SUFFIX = '.jsonl'
TEMP_SUFFIX = '-temp.jsonl'


def temp_path_for(path):
    """Returns the path of the temporary file used while rewriting ``path``.

    ``dir/name.jsonl`` becomes ``dir/name-temp.jsonl``. Paths without the ``.jsonl``
    suffix get ``-temp.jsonl`` appended.
    """
    if path.endswith(SUFFIX):
        return path[:-len(SUFFIX)] + TEMP_SUFFIX
    return path + TEMP_SUFFIX


class RewritePass:
    """A single stream-old-file, write-new-file, swap cycle.

    :param path: ``str``, the store file to rewrite.
    :param patch: ``function``, called for every line of the old file. The callback
        has the following prototype:

        .. code-block:: python

            def patch(key, line):
                return line

        where ``key`` is the decoded key of the line and ``line`` is the original line
        (without the newline). The return value decides what is written to the new
        file:

        * the same ``line`` - keep the line as is;
        * another string - replace the line with it;
        * ``None`` - drop the line.

    :param finalize: ``function``, optional, called once after the whole old file has
        been read. Returns an iterable of additional lines to append to the new file.
    :param codec: the line codec used to decode the keys.
    :param encoding: ``str``, the file encoding.
    :param fsync: ``bool``, sync the temporary file to disk before the swap.
    """
    def __init__(self, path, patch, finalize=None, codec=None, encoding='utf-8', fsync=False):
        self.path = path
        self.temp_path = temp_path_for(path)
        self.patch = patch
        self.finalize = finalize
        self.codec = codec or JsonRecordCodec()
        self.encoding = encoding
        self.fsync = fsync
        self.lines_read = 0
        self.lines_written = 0

    def run(self):
        """Runs the pass.

        Raises :class:`jsonlstore.storeapi.RewriteFailed` if any step fails. In that
        case the temporary file is discarded and the original file is not modified.
        """
        log.debug('Rewriting %s via %s', self.path, self.temp_path)
        try:
            self._write_temp()
            os.replace(self.temp_path, self.path)
        except Exception as e:
            log.error('Rewrite of %s failed. Error: %s', self.path, e)
            self._discard_temp()
            if isinstance(e, RewriteFailed):
                raise
            raise RewriteFailed('rewrite of %s failed: %s' % (self.path, e)) from e
        log.debug('Rewrote %s: %d lines read, %d lines written', self.path,
                  self.lines_read, self.lines_written)

    def _write_temp(self):
        with open(self.temp_path, 'w', encoding=self.encoding, newline='\n') as out:
            with open_read(self.path, self.codec, self.encoding) as reader:
                for lineno, line in reader.lines():
                    self.lines_read += 1
                    record = decode_line(self.codec, line, lineno)
                    self._emit(out, self.patch(record.key, line))
            if self.finalize:
                for line in self.finalize():
                    self._emit(out, line)
            out.flush()
            if self.fsync:
                os.fsync(out.fileno())

    def _emit(self, out, line):
        if line is None:
            return
        if '\n' in line:
            raise StoreException('refusing to write a line with an embedded newline')
        out.write(line)
        out.write('\n')
        self.lines_written += 1

    def _discard_temp(self):
        _discard(self.temp_path)


def _discard(temp_path):
    try:
        os.remove(temp_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning('Unable to remove temporary file %s. Error: %s', temp_path, e)


def rewrite(path, patch, finalize=None, codec=None, encoding='utf-8', fsync=False):
    """Rewrites the store file at ``path``. See :class:`RewritePass` for the parameters.

    Returns the :class:`RewritePass` that was run.
    """
    rewrite_pass = RewritePass(path, patch, finalize=finalize, codec=codec,
                               encoding=encoding, fsync=fsync)
    rewrite_pass.run()
    return rewrite_pass


def replace_with_empty(path, encoding='utf-8', fsync=False):
    """Atomically replaces the file at ``path`` with an empty file.

    An empty temporary file is created next to ``path`` and swapped in, so the
    store file never goes missing. Raises :class:`jsonlstore.storeapi.RewriteFailed`
    on failure.
    """
    temp_path = temp_path_for(path)
    try:
        with open(temp_path, 'w', encoding=encoding) as out:
            if fsync:
                os.fsync(out.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        log.error('Unable to clear %s. Error: %s', path, e)
        _discard(temp_path)
        raise RewriteFailed('clear of %s failed: %s' % (path, e)) from e

"""
-----------------
jsonlstore.config
-----------------

Store configuration.

A store is configured by a name and an optional folder. The store file is
``<folder>/<name>.jsonl``, or ``<name>.jsonl`` when no folder is given.

The options can also be loaded from a YAML file:

.. code-block:: yaml

    store:
      name: sessions
      folder: /var/lib/myapp
      encoding: utf-8
      fsync: true

The ``store`` section is optional - the options may also be given at the top level.
"""
import os
import re
from collections import namedtuple
from logging import getLogger

import yaml

from jsonlstore.storeapi import ConfigurationError, IOFailure


log = getLogger(__name__)


StoreOptions = namedtuple('StoreOptions', ['name', 'folder', 'encoding', 'fsync'])
"""Options for a :class:`jsonlstore.store.JsonlStorage`.
"""

StoreOptions.__new__.__defaults__ = (None, 'utf-8', False)

StoreOptions.name.__doc__ = """
    ``str``, the logical name of the store. Used as the file name.
"""

StoreOptions.folder.__doc__ = """
    ``str``, optional, the directory holding the store file.
"""

StoreOptions.encoding.__doc__ = """
    ``str``, the store file encoding. Default is ``utf-8``.
"""

StoreOptions.fsync.__doc__ = """
    ``bool``, whether to sync the rewritten file to disk before swapping it in.
"""


def resolve_path(name, folder=None):
    """Resolves the path of the store file.

    :param name: ``str``, the store name.
    :param folder: ``str``, optional folder.

    Returns ``<folder>/<name>.jsonl`` (duplicate path separators collapsed) or
    ``<name>.jsonl`` if no folder is given.
    """
    if not name:
        raise ConfigurationError('store name is required')
    if not folder:
        return '%s.jsonl' % name
    return re.sub(r'/{2,}', '/', '%s/%s.jsonl' % (folder, name))


def ensure_file(path):
    """Creates an empty file at ``path`` if it does not exist.

    Missing parent directories are created too. Existing files are not touched.
    """
    try:
        folder = os.path.dirname(path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        if not os.path.exists(path):
            open(path, 'a').close()
            log.info('Created store file %s', path)
    except OSError as e:
        raise IOFailure('cannot create %s: %s' % (path, e)) from e


def load_options(config_file):
    """Loads :class:`StoreOptions` from a YAML file.

    :param config_file: ``str``, path to the YAML file.

    Raises :class:`jsonlstore.storeapi.ConfigurationError` if the file cannot be read or
    parsed, has unknown keys, or has no store name.
    """
    try:
        with open(config_file) as cf:
            data = yaml.safe_load(cf)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError('unable to load %s: %s' % (config_file, e)) from e

    return options_from_dict(data or {})


def options_from_dict(data):
    """Builds :class:`StoreOptions` out of a ``dict``, optionally nested under ``store``.
    """
    if not isinstance(data, dict):
        raise ConfigurationError('store configuration must be a mapping')
    if isinstance(data.get('store'), dict):
        data = data['store']

    unknown = set(data) - set(StoreOptions._fields)
    if unknown:
        raise ConfigurationError('unknown store options: %s' % ', '.join(sorted(unknown)))
    if not data.get('name'):
        raise ConfigurationError('store name is required')

    return StoreOptions(**data)

"""
jsonlstore - a key/value store kept in a single JSON Lines file.
"""
from jsonlstore.metadata import version as __version__

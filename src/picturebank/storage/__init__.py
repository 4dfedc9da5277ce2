"""Storage backends for picturebank.

Provides the SQLite persistence gateway and the full-text picture index.
"""

from picturebank.storage.index import Indexer, PictureQuery
from picturebank.storage.sqlite import PersistenceGateway

__all__ = ["Indexer", "PersistenceGateway", "PictureQuery"]

# core/metadata_cache.py

import logging
from typing import Dict, Iterable, Iterator, List, Optional

from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.distance import FINGERPRINT_HEX_LENGTH
from photo_cleaner.core.models import Photo

logger = logging.getLogger(__name__)


class MetadataCache:
    """
    Snapshot of all live photo records for a single analysis run.

    Built with one bulk read so the pairwise comparison phase never queries
    the store per pair. Iteration order is the store's read order and is
    stable for a given database state. Create one per run and drop it after.
    """

    def __init__(self, photos: Iterable[Photo]):
        self._photos: Dict[str, Photo] = {}
        for photo in photos:
            self._photos[photo.local_identifier] = photo

    @classmethod
    def load(cls, database: PhotoDatabase) -> 'MetadataCache':
        cache = cls(database.get_all_photos())
        logger.debug("Metadata cache loaded with %d photos", len(cache))
        return cache

    def __len__(self) -> int:
        return len(self._photos)

    def __iter__(self) -> Iterator[Photo]:
        return iter(self._photos.values())

    def __contains__(self, local_identifier: str) -> bool:
        return local_identifier in self._photos

    def get(self, local_identifier: str) -> Optional[Photo]:
        return self._photos.get(local_identifier)

    def with_fingerprints(self, local_identifiers: Optional[Iterable[str]] = None) -> List[Photo]:
        """
        Photos carrying a usable fingerprint, in cache order.

        When local_identifiers is given, only those photos are returned.
        """
        wanted = set(local_identifiers) if local_identifiers is not None else None
        return [
            photo for photo in self._photos.values()
            if (wanted is None or photo.local_identifier in wanted)
            and photo.fingerprint
            and len(photo.fingerprint) == FINGERPRINT_HEX_LENGTH
        ]

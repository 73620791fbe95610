# components/photo_library.py

import logging
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from photo_cleaner.core.models import DeletionResult, Photo
from photo_cleaner.utils.file_utils import get_image_files

logger = logging.getLogger(__name__)


class PhotoLibrary(ABC):
    """Device photo library the analysis reads from and deletes through"""

    @abstractmethod
    def list_photos(self) -> List[Photo]:
        """Enumerate every photo asset currently in the library"""

    @abstractmethod
    def delete_photos(self, local_identifiers: List[str]) -> DeletionResult:
        """Delete assets; per-identifier failures are reported, not raised"""


class FileSystemPhotoLibrary(PhotoLibrary):
    """
    Photo library backed by a directory tree.

    The stable identifier of a photo is its resolved absolute path. Deleted
    files are moved to a timestamped trash directory unless trash_dir is None.
    """

    def __init__(self, root: str, trash_dir: Optional[str] = "data/trash",
                 recursive: bool = True):
        self.root = Path(root)
        self.trash_dir = Path(trash_dir) if trash_dir else None
        self.recursive = recursive

    def list_photos(self) -> List[Photo]:
        photos = []
        for image_path in get_image_files(str(self.root), self.recursive):
            photo = self._read_photo(Path(image_path))
            if photo is not None:
                photos.append(photo)
        logger.info("Found %d photos under %s", len(photos), self.root)
        return photos

    def _read_photo(self, path: Path) -> Optional[Photo]:
        try:
            stat = path.stat()
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            return None

        width, height = 0, 0
        try:
            # Header read only, pixel data is decoded later by the fingerprinter
            with Image.open(path) as img:
                width, height = img.size
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("Cannot read dimensions of %s: %s", path, e)

        resolved = path.resolve()
        created = getattr(stat, 'st_birthtime', stat.st_ctime)
        return Photo(
            local_identifier=str(resolved),
            file_path=str(resolved),
            file_name=path.name,
            file_size=stat.st_size,
            width=width,
            height=height,
            creation_date=datetime.fromtimestamp(created),
            modification_date=datetime.fromtimestamp(stat.st_mtime),
        )

    def delete_photos(self, local_identifiers: List[str]) -> DeletionResult:
        result = DeletionResult(deleted_count=0)
        for local_identifier in local_identifiers:
            try:
                result.operations.append(self._delete_file(Path(local_identifier)))
                result.deleted_count += 1
            except OSError as e:
                logger.error("Error deleting %s: %s", local_identifier, e)
                result.errors[local_identifier] = str(e)
        return result

    def _delete_file(self, source: Path) -> Dict[str, str]:
        if not source.is_file():
            raise FileNotFoundError(f"File not found: {source}")

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        if self.trash_dir is not None:
            self.trash_dir.mkdir(parents=True, exist_ok=True)
            trash_path = self.trash_dir / f"{timestamp}_{source.name}"
            counter = 1
            while trash_path.exists():
                trash_path = self.trash_dir / f"{timestamp}_{counter}_{source.name}"
                counter += 1
            shutil.move(str(source), str(trash_path))
            return {
                'operation': 'move_to_trash',
                'source': str(source),
                'destination': str(trash_path),
                'timestamp': timestamp
            }
        else:
            source.unlink()
            return {
                'operation': 'delete',
                'source': str(source),
                'timestamp': timestamp
            }

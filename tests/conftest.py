# tests/conftest.py

from datetime import datetime

import pytest

from photo_cleaner.components.photo_library import PhotoLibrary
from photo_cleaner.config import SystemConfig
from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.fingerprint import Fingerprinter, ImageDecodeError
from photo_cleaner.core.group_store import GroupStore
from photo_cleaner.core.models import DeletionResult, Photo


def fingerprint_with_bits(n: int) -> str:
    """Fingerprint with the n lowest bits set; distance between two is |a - b|"""
    return format((1 << n) - 1, '064x')


@pytest.fixture
def make_fingerprint():
    return fingerprint_with_bits


@pytest.fixture
def make_photo():
    def _make(name, file_size=1000, fingerprint=None, width=100, height=100):
        return Photo(
            local_identifier=f"id-{name}",
            file_path=f"/photos/{name}.jpg",
            file_name=f"{name}.jpg",
            file_size=file_size,
            width=width,
            height=height,
            creation_date=datetime(2024, 1, 1, 12, 0, 0),
            modification_date=datetime(2024, 1, 2, 12, 0, 0),
            fingerprint=fingerprint,
        )
    return _make


@pytest.fixture
def database():
    db = PhotoDatabase(":memory:")
    yield db
    db.close()


@pytest.fixture
def group_store(database):
    return GroupStore(database)


@pytest.fixture
def saved_photos(database, make_photo):
    """Persist photos and return them with ids assigned"""
    def _save(*photos):
        for photo in photos:
            photo.id = database.save_photo(photo)
        return list(photos)
    return _save


@pytest.fixture
def test_config():
    return SystemConfig(n_workers=1, show_progress=False)


class StubFingerprinter(Fingerprinter):
    """Looks fingerprints up by file path and counts image reads"""

    name = "stub"

    def __init__(self, values, allow_fallback=False):
        super().__init__(allow_fallback)
        self.values = dict(values)
        self.calls = []

    def compute_image_fingerprint(self, file_path):
        self.calls.append(file_path)
        if file_path not in self.values:
            raise ImageDecodeError(f"cannot decode {file_path}")
        return self.values[file_path]


@pytest.fixture
def stub_fingerprinter():
    return StubFingerprinter


class FakePhotoLibrary(PhotoLibrary):
    """In-memory library; identifiers in `failing` refuse deletion"""

    def __init__(self, photos=(), failing=()):
        self.photos = list(photos)
        self.failing = set(failing)
        self.deleted = []

    def list_photos(self):
        return list(self.photos)

    def delete_photos(self, local_identifiers):
        result = DeletionResult(deleted_count=0)
        for local_identifier in local_identifiers:
            if local_identifier in self.failing:
                result.errors[local_identifier] = "permission denied"
                continue
            self.deleted.append(local_identifier)
            result.operations.append({'operation': 'delete', 'source': local_identifier})
            result.deleted_count += 1
        return result


@pytest.fixture
def fake_library():
    return FakePhotoLibrary

# tests/test_photo_library.py

import cv2
import numpy as np
import pytest

from photo_cleaner.components.photo_library import FileSystemPhotoLibrary


@pytest.fixture
def photo_dir(tmp_path):
    root = tmp_path / "photos"
    (root / "nested").mkdir(parents=True)

    cv2.imwrite(str(root / "wide.png"), np.zeros((60, 120, 3), dtype=np.uint8))
    cv2.imwrite(str(root / "nested" / "tall.jpg"), np.zeros((90, 30, 3), dtype=np.uint8))
    (root / "notes.txt").write_text("not a photo")
    (root / "broken.jpg").write_bytes(b"garbage")
    return root


def test_list_photos(photo_dir):
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=None)
    photos = {p.file_name: p for p in library.list_photos()}

    assert set(photos) == {"wide.png", "tall.jpg", "broken.jpg"}
    assert (photos["wide.png"].width, photos["wide.png"].height) == (120, 60)
    assert (photos["tall.jpg"].width, photos["tall.jpg"].height) == (30, 90)
    assert photos["wide.png"].file_size == (photo_dir / "wide.png").stat().st_size
    assert photos["wide.png"].local_identifier == str((photo_dir / "wide.png").resolve())
    assert photos["wide.png"].modification_date is not None


def test_unreadable_photo_has_no_dimensions(photo_dir):
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=None)
    broken = [p for p in library.list_photos() if p.file_name == "broken.jpg"][0]
    assert (broken.width, broken.height) == (0, 0)


def test_non_recursive_listing(photo_dir):
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=None, recursive=False)
    assert {p.file_name for p in library.list_photos()} == {"wide.png", "broken.jpg"}


def test_delete_moves_to_trash(photo_dir, tmp_path):
    trash = tmp_path / "trash"
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=str(trash))
    target = str((photo_dir / "wide.png").resolve())

    result = library.delete_photos([target])

    assert result.deleted_count == 1
    assert result.errors == {}
    assert not (photo_dir / "wide.png").exists()
    assert [f.name.endswith("_wide.png") for f in trash.iterdir()] == [True]
    [operation] = result.operations
    assert operation['operation'] == 'move_to_trash'
    assert operation['source'] == target
    assert operation['destination'].endswith("_wide.png")


def test_delete_permanently(photo_dir):
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=None)
    target = str((photo_dir / "wide.png").resolve())

    result = library.delete_photos([target])
    assert result.deleted_count == 1
    assert [op['operation'] for op in result.operations] == ['delete']
    assert not (photo_dir / "wide.png").exists()


def test_delete_reports_missing_files(photo_dir):
    library = FileSystemPhotoLibrary(str(photo_dir), trash_dir=None)
    existing = str((photo_dir / "wide.png").resolve())
    missing = str(photo_dir / "gone.jpg")

    result = library.delete_photos([missing, existing])

    assert result.deleted_count == 1
    assert list(result.errors) == [missing]
    assert [op['source'] for op in result.operations] == [existing]

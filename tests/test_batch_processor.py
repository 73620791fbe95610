# tests/test_batch_processor.py

import threading

import pytest

from photo_cleaner.core.batch_processor import BatchProcessor


def square_or_fail(photo):
    if photo % 5 == 0:
        raise ValueError(f"bad photo {photo}")
    return photo * photo


@pytest.mark.parametrize("n_workers", [1, 4])
def test_every_photo_is_processed(n_workers):
    processor = BatchProcessor(n_workers=n_workers, show_progress=False)
    results = list(processor.process_photos(list(range(1, 21)), square_or_fail))

    assert sorted(photo for photo, _, _ in results) == list(range(1, 21))
    for photo, result, error in results:
        if photo % 5 == 0:
            assert result is None
            assert isinstance(error, ValueError)
        else:
            assert result == photo * photo
            assert error is None


@pytest.mark.parametrize("n_workers", [1, 4])
def test_cancelled_before_start(n_workers):
    cancel = threading.Event()
    cancel.set()
    processor = BatchProcessor(n_workers=n_workers, show_progress=False)
    assert list(processor.process_photos([1, 2, 3], square_or_fail, cancel_event=cancel)) == []


@pytest.mark.parametrize("n_workers", [1, 2])
def test_cancel_stops_handing_out_work(n_workers):
    cancel = threading.Event()
    processor = BatchProcessor(n_workers=n_workers, show_progress=False)

    seen = []
    for photo, _, _ in processor.process_photos(list(range(1, 101)), square_or_fail,
                                                cancel_event=cancel):
        seen.append(photo)
        cancel.set()

    assert 1 <= len(seen) < 100


def test_worker_count_is_at_least_one():
    assert BatchProcessor(n_workers=0).n_workers == 1

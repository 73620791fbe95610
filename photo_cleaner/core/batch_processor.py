# core/batch_processor.py

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Iterator, List, Optional, Tuple, Any

from tqdm import tqdm

from photo_cleaner.core.models import Photo

logger = logging.getLogger(__name__)


class BatchProcessor:
    """
    Bounded parallel per-photo processing with cancellation between photos.

    Work runs on a thread pool (fingerprinting is dominated by file I/O and
    native decoding). Results are yielded to the calling thread as they
    complete, so every store write stays on that single thread.
    """

    def __init__(self, n_workers: int = 4, show_progress: bool = True):
        self.n_workers = max(1, n_workers)
        self.show_progress = show_progress

    def process_photos(self,
                       photos: List[Photo],
                       process_func: Callable[[Photo], Any],
                       cancel_event=None,
                       desc: str = "Fingerprinting") -> Iterator[Tuple[Photo, Any, Optional[Exception]]]:
        """
        Apply process_func to each photo.

        Yields (photo, result, error) per photo in completion order; exactly
        one of result/error is set. Stops handing out work once cancel_event
        is set; photos not started by then are never yielded.
        """
        progress = tqdm(total=len(photos), desc=desc, disable=not self.show_progress)
        try:
            if self.n_workers == 1:
                yield from self._process_sequential(photos, process_func, cancel_event, progress)
            else:
                yield from self._process_parallel(photos, process_func, cancel_event, progress)
        finally:
            progress.close()

    def _process_sequential(self, photos, process_func, cancel_event, progress):
        for photo in photos:
            if _cancelled(cancel_event):
                return
            yield (photo, *_run(process_func, photo))
            progress.update(1)

    def _process_parallel(self, photos, process_func, cancel_event, progress):
        queue = iter(photos)
        in_flight = {}
        max_in_flight = self.n_workers * 2

        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            def fill():
                while len(in_flight) < max_in_flight and not _cancelled(cancel_event):
                    photo = next(queue, None)
                    if photo is None:
                        return
                    in_flight[executor.submit(_run, process_func, photo)] = photo

            fill()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    photo = in_flight.pop(future)
                    yield (photo, *future.result())
                    progress.update(1)

                if _cancelled(cancel_event):
                    for future in in_flight:
                        future.cancel()
                    # Let already running work finish so no write is half done
                    for future in list(in_flight):
                        if not future.cancelled():
                            yield (in_flight[future], *future.result())
                    return
                fill()


def _run(process_func, photo) -> Tuple[Any, Optional[Exception]]:
    try:
        return process_func(photo), None
    except Exception as e:
        return None, e


def _cancelled(cancel_event) -> bool:
    return cancel_event is not None and cancel_event.is_set()

# components/duplicate_detector.py

import logging
import sqlite3
import threading
import time
from typing import Dict, List, Optional, Tuple

from photo_cleaner.components.photo_library import PhotoLibrary
from photo_cleaner.config import SystemConfig
from photo_cleaner.core.batch_processor import BatchProcessor
from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.distance import FingerprintComparator
from photo_cleaner.core.exceptions import AnalysisInProgressError, PhotoCleanerError
from photo_cleaner.core.fingerprint import Fingerprinter, create_fingerprinter
from photo_cleaner.core.group_store import GroupStore
from photo_cleaner.core.grouping import GroupingEngine, ProgressCallback
from photo_cleaner.core.models import (AnalysisResult, AnalysisSession, DuplicateGroup,
                                       GroupDeletionResult, Photo, SessionStatus)
from photo_cleaner.core.session_tracker import AnalysisSessionTracker
from photo_cleaner.utils.report_generator import summarize_groups

logger = logging.getLogger(__name__)


class DuplicateDetectionService:
    """
    Entry point for callers: analyze a photo batch, review groups, delete or
    reject them, and read the analysis audit trail.

    Only one analysis may run at a time per service; an overlapping call
    raises AnalysisInProgressError.
    """

    def __init__(self,
                 database: PhotoDatabase,
                 library: Optional[PhotoLibrary] = None,
                 config: Optional[SystemConfig] = None,
                 fingerprinter: Optional[Fingerprinter] = None):
        self.config = config or SystemConfig()
        self.database = database
        self.library = library
        self.group_store = GroupStore(database)
        self.sessions = AnalysisSessionTracker(database)
        self.comparator = FingerprintComparator.from_config(self.config.similarity)
        self.fingerprinter = fingerprinter or create_fingerprinter(self.config.fingerprint)
        self.engine = GroupingEngine(
            database,
            self.group_store,
            self.fingerprinter,
            near_duplicate_threshold=self.comparator.near_duplicate_threshold,
            clustering=self.config.grouping.clustering,
            batch_processor=BatchProcessor(
                n_workers=self.config.n_workers,
                show_progress=self.config.show_progress
            ),
        )
        self._busy = threading.Lock()

    @classmethod
    def from_config(cls, config: SystemConfig,
                    library: Optional[PhotoLibrary] = None) -> 'DuplicateDetectionService':
        return cls(PhotoDatabase(config.database_path), library=library, config=config)

    def is_analysis_in_progress(self) -> bool:
        return self._busy.locked()

    def analyze(self,
                photos: Optional[List[Photo]] = None,
                on_progress: Optional[ProgressCallback] = None,
                clear_existing_groups: Optional[bool] = None,
                threshold: Optional[int] = None,
                cancel_event=None) -> AnalysisResult:
        """
        Fingerprint, cluster and persist duplicate groups for a photo batch.

        photos defaults to the full library listing. Per-photo and per-group
        failures are reported on the result; whole-run failures mark the
        session 'error' and propagate.
        """
        if not self._busy.acquire(blocking=False):
            raise AnalysisInProgressError("An analysis is already running")
        try:
            if photos is None:
                if self.library is None:
                    raise ValueError("No photos given and no photo library configured")
                photos = self.library.list_photos()
            if clear_existing_groups is None:
                clear_existing_groups = self.config.grouping.clear_existing_groups
            return self._analyze(photos, on_progress, clear_existing_groups,
                                 threshold, cancel_event)
        finally:
            self._busy.release()

    def _analyze(self, photos, on_progress, clear_existing_groups, threshold, cancel_event):
        start = time.monotonic()
        session_id = self.sessions.start_session(len(photos))

        try:
            outcome = self.engine.run(
                photos,
                threshold=threshold,
                clear_existing_groups=clear_existing_groups,
                on_progress=on_progress,
                cancel_event=cancel_event,
            )
        except Exception as e:
            self._record_failure(session_id, e)
            raise

        status = SessionStatus.CANCELLED if outcome.cancelled else SessionStatus.COMPLETED
        self.sessions.update_session(
            session_id,
            analyzed_photos=outcome.analyzed_photos,
            duplicates_found=outcome.duplicates_found,
            total_size_analyzed=sum(photo.file_size for photo in photos),
            potential_space_saved=outcome.potential_space_saved,
            status=status,
        )

        result = AnalysisResult(
            total_photos=len(photos),
            duplicates_found=outcome.duplicates_found,
            groups=outcome.groups,
            potential_space_saved=outcome.potential_space_saved,
            processing_time_ms=int((time.monotonic() - start) * 1000),
            analyzed_photos=outcome.analyzed_photos,
            session_id=session_id,
            cancelled=outcome.cancelled,
            errors=outcome.errors,
        )
        if on_progress is not None and not outcome.cancelled:
            on_progress(100.0, "Analysis complete")
        logger.info(self.format_analysis_result(result), extra={'session_id': session_id})
        return result

    def _record_failure(self, session_id: str, error: Exception):
        logger.error("Analysis %s failed: %s", session_id, error, extra={'session_id': session_id})
        try:
            self.sessions.update_session(
                session_id,
                status=SessionStatus.ERROR,
                error_message=str(error) or error.__class__.__name__,
            )
        except (PhotoCleanerError, sqlite3.Error) as e:
            # Store is gone too; the original error is what the caller sees
            logger.error("Could not record failure of session %s: %s", session_id, e)

    def delete_group_members(self, group_id: int, photo_ids: List[int]) -> GroupDeletionResult:
        """
        Delete photos of a group from the library and soft-delete their records.

        The group is recomputed afterwards and removed when fewer than two
        live members remain.
        """
        result = GroupDeletionResult(deleted_count=0)
        group = self.group_store.get_group(group_id)
        if group is None:
            result.errors.append(f"Duplicate group {group_id} not found")
            return result
        if self.library is None:
            result.errors.append("No photo library configured")
            result.group = group
            return result

        members = {photo.id: photo for photo in group.photos}
        targets = []
        for photo_id in photo_ids:
            if photo_id in members:
                targets.append(members[photo_id])
            else:
                result.errors.append(f"Photo {photo_id} is not a live member of group {group_id}")

        if targets:
            try:
                deletion = self.library.delete_photos([p.local_identifier for p in targets])
            except OSError as e:
                logger.error("Photo library refused deletion: %s", e)
                result.errors.append(f"Photo library refused deletion: {e}")
                result.group = group
                return result

            result.deleted_count = deletion.deleted_count
            result.operations = list(deletion.operations)
            for operation in deletion.operations:
                logger.info("%s: %s -> %s", operation["operation"], operation["source"],
                            operation.get("destination", "-"))
            deleted = [p for p in targets if p.local_identifier not in deletion.errors]
            for photo in targets:
                if photo.local_identifier in deletion.errors:
                    result.errors.append(f"Failed to delete photo {photo.id}")
            try:
                self.database.mark_deleted([p.id for p in deleted])
            except sqlite3.Error as e:
                logger.error("Failed to mark photos deleted: %s", e)
                result.errors.extend(f"Failed to update database for photo {p.id}" for p in deleted)

        result.group = self.group_store.refresh_group(group_id)
        return result

    def reject_group(self, group_id: int):
        """User feedback: the group is not a set of duplicates"""
        self.group_store.reject_group(group_id)

    def get_groups(self) -> List[DuplicateGroup]:
        return self.group_store.get_all_groups()

    def get_latest_session(self) -> Optional[AnalysisSession]:
        return self.sessions.get_latest_session()

    def find_similar_photos(self, fingerprint: str,
                            threshold: Optional[int] = None) -> List[Tuple[Photo, int]]:
        return self.engine.find_similar(fingerprint, threshold)

    def generate_duplicate_report(self) -> Dict:
        return summarize_groups(self.get_groups())

    @staticmethod
    def format_analysis_result(result: AnalysisResult) -> str:
        """One-line summary for display; per-item failures appear as counts"""
        space_mb = result.potential_space_saved / (1024 * 1024)
        seconds = result.processing_time_ms / 1000
        summary = (f"Analysis {'cancelled' if result.cancelled else 'complete'}: "
                   f"{result.duplicates_found} duplicates found in {result.total_photos} photos, "
                   f"{space_mb:.1f} MB can be freed. Processing time: {seconds:.1f}s")
        if result.errors:
            summary += (f" ({result.failed_photos} photos and "
                        f"{result.failed_groups} groups could not be processed)")
        return summary

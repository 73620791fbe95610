# core/grouping.py

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from photo_cleaner.core.batch_processor import BatchProcessor
from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.distance import FINGERPRINT_BITS, distances_to, stack_fingerprints
from photo_cleaner.core.exceptions import GroupPersistenceError, PhotoFingerprintError
from photo_cleaner.core.fingerprint import Fingerprinter, normalize_fingerprint
from photo_cleaner.core.group_store import GroupStore
from photo_cleaner.core.metadata_cache import MetadataCache
from photo_cleaner.core.models import DuplicateGroup, FingerprintSource, ItemError, Photo

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

# Progress milestones (percent)
FINGERPRINT_PHASE_END = 80.0
GROUPING_START = 90.0
GROUPING_END = 99.0

CLUSTERING_STRATEGIES = ("seed", "union_find")


@dataclass
class GroupingOutcome:
    groups: List[DuplicateGroup] = field(default_factory=list)
    duplicates_found: int = 0
    potential_space_saved: int = 0
    analyzed_photos: int = 0
    errors: List[ItemError] = field(default_factory=list)
    cancelled: bool = False


def derive_group_key(cluster: List[Photo]) -> str:
    """Lexically smallest member fingerprint; stable across runs"""
    return min(photo.fingerprint for photo in cluster)


def select_keep(cluster: List[Photo]) -> Photo:
    """Largest file wins; the first one in cluster order breaks ties"""
    return max(cluster, key=lambda photo: photo.file_size)


def seed_expansion_clusters(fingerprints: np.ndarray, threshold: int) -> List[List[int]]:
    """
    Single pass: each unprocessed row seeds a cluster and absorbs every later
    unprocessed row within threshold of the seed only.

    Not a transitive closure. With A~B, B~C and A!~C, C stays out of A's
    cluster. Returns index lists of size >= 2, in seed order.
    """
    n = fingerprints.shape[0]
    processed = np.zeros(n, dtype=bool)
    clusters = []

    for seed in range(n):
        if processed[seed]:
            continue
        processed[seed] = True

        # Every index before the seed is already processed
        rest = np.flatnonzero(~processed)
        if rest.size == 0:
            break
        distances = distances_to(fingerprints[seed], fingerprints[rest])
        members = rest[distances <= threshold]
        if members.size == 0:
            continue

        processed[members] = True
        clusters.append([seed] + members.tolist())

    return clusters


def union_find_clusters(fingerprints: np.ndarray, threshold: int) -> List[List[int]]:
    """
    Connected components over every pair within threshold.

    Drop-in alternative to seed expansion that never under-clusters chains.
    """
    n = fingerprints.shape[0]
    parent = list(range(n))

    def find(x):
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for i in range(n - 1):
        distances = distances_to(fingerprints[i], fingerprints[i + 1:])
        for offset in np.flatnonzero(distances <= threshold):
            root_a, root_b = find(i), find(i + 1 + int(offset))
            if root_a != root_b:
                parent[max(root_a, root_b)] = min(root_a, root_b)

    components: Dict[int, List[int]] = {}
    for index in range(n):
        components.setdefault(find(index), []).append(index)
    return [members for members in components.values() if len(members) > 1]


class GroupingEngine:
    """
    Fingerprints a photo batch, clusters it and persists duplicate groups.

    Runs are incremental: clusters whose key matches an existing group, or
    that share members with a group still within threshold, are merged into
    it, so repeating a run over an unchanged library adds no rows. Photos
    whose fingerprint changed leave their group before clustering.
    Per-photo and per-group failures are collected on the outcome;
    StoreUnavailableError propagates.
    """

    def __init__(self,
                 database: PhotoDatabase,
                 group_store: GroupStore,
                 fingerprinter: Fingerprinter,
                 near_duplicate_threshold: int = 10,
                 clustering: str = "seed",
                 batch_processor: Optional[BatchProcessor] = None):
        if clustering not in CLUSTERING_STRATEGIES:
            raise ValueError(f"Unknown clustering strategy: {clustering}")
        self.database = database
        self.group_store = group_store
        self.fingerprinter = fingerprinter
        self.near_duplicate_threshold = near_duplicate_threshold
        self.clustering = clustering
        self.batch_processor = batch_processor or BatchProcessor(n_workers=1, show_progress=False)

    def run(self,
            photos: List[Photo],
            threshold: Optional[int] = None,
            clear_existing_groups: bool = False,
            on_progress: Optional[ProgressCallback] = None,
            cancel_event=None) -> GroupingOutcome:
        threshold = self.near_duplicate_threshold if threshold is None else threshold
        if not 0 <= threshold <= FINGERPRINT_BITS:
            raise ValueError(f"threshold must be within 0..{FINGERPRINT_BITS}, got {threshold}")

        report = _ProgressReporter(on_progress)
        outcome = GroupingOutcome()
        report(0, "Preparing photos")

        if clear_existing_groups:
            self.group_store.clear_all_groups()

        batch_ids = self._fingerprint_batch(photos, outcome, report, cancel_event)
        if outcome.cancelled:
            logger.info("Analysis cancelled during fingerprinting")
            return outcome

        report(GROUPING_START, "Grouping duplicates")
        cache = MetadataCache.load(self.database)
        candidates = cache.with_fingerprints(batch_ids)
        outcome.analyzed_photos = len(candidates)

        clusters = self.cluster(candidates, threshold)
        logger.info("Found %d clusters among %d fingerprinted photos",
                    len(clusters), len(candidates))

        touched = []
        for index, cluster in enumerate(clusters):
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                logger.info("Analysis cancelled after %d of %d groups", index, len(clusters))
                break
            try:
                group_id = self._persist_cluster(cluster, threshold)
                if group_id not in touched:
                    touched.append(group_id)
            except GroupPersistenceError as e:
                logger.error("Failed to persist duplicate group: %s", e,
                             extra={'group_key': e.group_key})
                outcome.errors.append(ItemError(e.group_key, "group", str(e)))
            report(GROUPING_START + (index + 1) / len(clusters) * (GROUPING_END - GROUPING_START),
                   f"Grouping duplicates: {index + 1}/{len(clusters)}")

        for group_id in touched:
            group = self.group_store.get_group(group_id)
            if group is None:
                continue
            outcome.groups.append(group)
            outcome.duplicates_found += group.duplicates_to_remove
            outcome.potential_space_saved += group.space_saved

        return outcome

    def cluster(self, candidates: List[Photo], threshold: int) -> List[List[Photo]]:
        """Partition candidates (cache order) into clusters of two or more"""
        if len(candidates) < 2:
            return []
        fingerprints = stack_fingerprints([photo.fingerprint for photo in candidates])
        if self.clustering == "union_find":
            index_clusters = union_find_clusters(fingerprints, threshold)
        else:
            index_clusters = seed_expansion_clusters(fingerprints, threshold)
        return [[candidates[i] for i in members] for members in index_clusters]

    def find_similar(self, fingerprint: str, threshold: Optional[int] = None) -> List[Tuple[Photo, int]]:
        """Live photos within threshold of a fingerprint, nearest first"""
        threshold = self.near_duplicate_threshold if threshold is None else threshold
        candidates = MetadataCache.load(self.database).with_fingerprints()
        if not candidates:
            return []
        target = stack_fingerprints([normalize_fingerprint(fingerprint)])[0]
        distances = distances_to(target, stack_fingerprints([p.fingerprint for p in candidates]))
        order = np.argsort(distances, kind="stable")
        return [(candidates[i], int(distances[i])) for i in order if distances[i] <= threshold]

    # Internals

    def _fingerprint_batch(self, photos, outcome, report, cancel_event) -> List[str]:
        """
        Save every photo record and make sure each carries a fingerprint.

        Returns the identifiers of photos that were saved successfully.
        """
        total = len(photos) or 1
        batch_ids = []
        pending = []
        done = 0

        for photo in photos:
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                return batch_ids
            try:
                with self.database.transaction():
                    stored = self._save_photo(photo)
                batch_ids.append(photo.local_identifier)
                if stored.fingerprint:
                    done += 1
                else:
                    pending.append(photo)
            except sqlite3.Error as e:
                logger.warning("Failed to save photo %s: %s", photo.local_identifier, e,
                               extra={'local_identifier': photo.local_identifier})
                outcome.errors.append(ItemError(photo.local_identifier, "fingerprint", str(e)))
                done += 1

        report(done / total * FINGERPRINT_PHASE_END, f"Analyzing: {done}/{len(photos)}")

        results = self.batch_processor.process_photos(
            pending, self.fingerprinter.fingerprint, cancel_event=cancel_event
        )
        for photo, result, error in results:
            done += 1
            if error is None:
                try:
                    self.database.update_fingerprint(photo.id, result.value, result.source)
                    if result.degraded:
                        logger.warning("Photo %s uses the degraded fallback fingerprint",
                                       photo.local_identifier)
                except sqlite3.Error as e:
                    error = PhotoFingerprintError(photo.local_identifier, str(e))
            if error is not None:
                logger.warning("Excluding photo %s from this run: %s", photo.local_identifier, error,
                               extra={'local_identifier': photo.local_identifier})
                outcome.errors.append(ItemError(photo.local_identifier, "fingerprint", str(error)))
            report(done / total * FINGERPRINT_PHASE_END, f"Analyzing: {done}/{len(photos)}")

        if cancel_event is not None and cancel_event.is_set():
            outcome.cancelled = True
        return batch_ids

    def _save_photo(self, photo: Photo) -> Photo:
        """
        Upsert one photo and return the stored record.

        A photo whose fingerprint was invalidated or replaced no longer
        matches the group it sits in, so it leaves that group here.
        """
        previous = self.database.get_photo_by_identifier(photo.local_identifier)
        photo.id = self.database.save_photo(photo)
        if photo.fingerprint:
            self.database.update_fingerprint(
                photo.id, normalize_fingerprint(photo.fingerprint), FingerprintSource.SUPPLIED
            )
        stored = self.database.get_photo(photo.id)
        if previous is not None and previous.fingerprint and previous.fingerprint != stored.fingerprint:
            affected = self.group_store.detach_photos([photo.id])
            if affected:
                logger.info("Photo %s changed, removed from group %d",
                            photo.local_identifier, affected[0],
                            extra={'local_identifier': photo.local_identifier})
        return stored

    def _persist_cluster(self, cluster: List[Photo], threshold: int) -> int:
        group_key = derive_group_key(cluster)
        photo_ids = [photo.id for photo in cluster]

        group_id = self.group_store.find_group_by_key(group_key)
        if group_id is None:
            held = self.group_store.find_group_for_photos(photo_ids)
            if held is not None and self._fits_group(held, cluster, threshold):
                group_id = held
            elif held is not None:
                # The held group no longer matches; the cluster starts over
                try:
                    self.group_store.detach_photos(photo_ids)
                except sqlite3.Error as e:
                    raise GroupPersistenceError(group_key, str(e)) from e
        if group_id is not None:
            self.group_store.merge_into_group(group_id, photo_ids)
            return group_id

        keep = select_keep(cluster)
        return self.group_store.create_group(group_key, photo_ids, keep.id)

    def _fits_group(self, group_id: int, cluster: List[Photo], threshold: int) -> bool:
        """
        True when every live member of an existing group is within threshold
        of the cluster seed (any cluster member for union-find).
        """
        group = self.group_store.get_group(group_id)
        if group is None:
            return False
        members = [photo.fingerprint for photo in group.photos if photo.fingerprint]
        if not members:
            return False
        anchors = cluster if self.clustering == "union_find" else cluster[:1]
        member_fps = stack_fingerprints(members)
        nearest = np.min(
            [distances_to(stack_fingerprints([anchor.fingerprint])[0], member_fps)
             for anchor in anchors],
            axis=0,
        )
        return bool(np.all(nearest <= threshold))


class _ProgressReporter:
    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback

    def __call__(self, percent: float, message: str):
        if self.callback is not None:
            self.callback(min(max(percent, 0.0), 100.0), message)

# core/models.py

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class SessionStatus(str, Enum):
    """Lifecycle states of an analysis session"""
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


class FingerprintSource(str, Enum):
    """Where a stored fingerprint came from"""
    IMAGE = "image"
    SUPPLIED = "supplied"
    # Dimension/size composite, cannot tell apart photos with equal dimensions
    FALLBACK = "fallback"


@dataclass
class Photo:
    """One physical image asset as observed in the photo library"""
    local_identifier: str
    file_path: str
    file_name: str
    file_size: int
    width: int
    height: int
    creation_date: Optional[datetime] = None
    modification_date: Optional[datetime] = None
    fingerprint: Optional[str] = None
    fingerprint_source: Optional[FingerprintSource] = None
    quality_score: float = 0.0
    is_duplicate: bool = False
    is_deleted: bool = False
    id: Optional[int] = None  # store row id, assigned on first save

    @property
    def pixel_count(self) -> int:
        return max(self.width, 0) * max(self.height, 0)


@dataclass
class DuplicateGroup:
    """A persisted cluster of two or more duplicate photos"""
    id: int
    group_key: str
    photo_count: int
    total_size: int
    recommended_keep_id: Optional[int]
    photos: List[Photo] = field(default_factory=list)

    @property
    def recommended_keep(self) -> Optional[Photo]:
        for photo in self.photos:
            if photo.id == self.recommended_keep_id:
                return photo
        return None

    @property
    def duplicates_to_remove(self) -> int:
        return max(self.photo_count - 1, 0)

    @property
    def space_saved(self) -> int:
        """Bytes freed by deleting every member except the recommended keep"""
        keep = self.recommended_keep
        return self.total_size - (keep.file_size if keep else 0)


@dataclass
class AnalysisSession:
    """Audit record of one analysis run"""
    session_id: str
    total_photos: int
    start_time: datetime
    analyzed_photos: int = 0
    duplicates_found: int = 0
    total_size_analyzed: int = 0
    potential_space_saved: int = 0
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RUNNING
    error_message: Optional[str] = None


@dataclass
class ItemError:
    """A recovered per-photo or per-group failure"""
    item: str
    kind: str  # 'fingerprint' or 'group'
    message: str


@dataclass
class AnalysisResult:
    """Outcome of one analyze() call"""
    total_photos: int
    duplicates_found: int
    groups: List[DuplicateGroup]
    potential_space_saved: int
    processing_time_ms: int
    analyzed_photos: int = 0
    session_id: Optional[str] = None
    cancelled: bool = False
    errors: List[ItemError] = field(default_factory=list)

    @property
    def failed_photos(self) -> int:
        return sum(1 for e in self.errors if e.kind == "fingerprint")

    @property
    def failed_groups(self) -> int:
        return sum(1 for e in self.errors if e.kind == "group")


@dataclass
class DeletionResult:
    """Outcome of deleting photos through the photo library"""
    deleted_count: int
    errors: Dict[str, str] = field(default_factory=dict)  # local_identifier -> reason
    # One entry per file removed by this call: operation, source, destination
    operations: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class GroupDeletionResult:
    """Outcome of deleting members of one duplicate group"""
    deleted_count: int
    errors: List[str] = field(default_factory=list)
    group: Optional[DuplicateGroup] = None  # None once the group dissolved
    operations: List[Dict[str, str]] = field(default_factory=list)

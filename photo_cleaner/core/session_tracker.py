# core/session_tracker.py

import logging
import uuid
from datetime import datetime
from typing import Optional

from photo_cleaner.core.database import PhotoDatabase, from_db_time, to_db_time
from photo_cleaner.core.exceptions import SessionStateError
from photo_cleaner.core.models import AnalysisSession, SessionStatus

logger = logging.getLogger(__name__)

# Patchable session fields and their column names
SESSION_FIELDS = {
    'analyzed_photos': 'analyzed_photos',
    'duplicates_found': 'duplicates_found',
    'total_size_analyzed': 'total_size_analyzed',
    'potential_space_saved': 'potential_space_saved',
    'end_time': 'end_time',
    'status': 'status',
    'error_message': 'error_message',
}


class AnalysisSessionTracker:
    """
    Append-only audit trail of analysis runs.

    Status moves forward only: 'running' to exactly one terminal state, after
    which the record is immutable.
    """

    def __init__(self, database: PhotoDatabase):
        self.database = database

    def start_session(self, total_photos: int) -> str:
        session_id = uuid.uuid4().hex
        self.database.execute("""
            INSERT INTO analysis_sessions (session_uuid, total_photos, start_time, status)
            VALUES (?, ?, ?, ?)
        """, (session_id, total_photos, datetime.now().isoformat(),
              SessionStatus.RUNNING.value))
        logger.info("Started analysis session %s for %d photos", session_id, total_photos)
        return session_id

    def update_session(self, session_id: str, **fields):
        """
        Merge-patch a session: only the given fields are written.

        A terminal status stamps end_time unless the caller supplies one.
        """
        unknown = set(fields) - set(SESSION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        if not fields:
            return

        with self.database.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM analysis_sessions WHERE session_uuid = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise SessionStateError(f"Unknown session {session_id}")

            current = SessionStatus(row["status"])
            if current.is_terminal:
                raise SessionStateError(
                    f"Session {session_id} is {current.value} and can no longer change"
                )

            if 'status' in fields:
                fields['status'] = SessionStatus(fields['status'])
                if fields['status'].is_terminal and 'end_time' not in fields:
                    fields['end_time'] = datetime.now()

            values = []
            for name in fields:
                value = fields[name]
                if isinstance(value, SessionStatus):
                    value = value.value
                elif isinstance(value, datetime):
                    value = to_db_time(value)
                values.append(value)

            set_clause = ", ".join(f"{SESSION_FIELDS[name]} = ?" for name in fields)
            conn.execute(
                f"UPDATE analysis_sessions SET {set_clause} WHERE session_uuid = ?",
                values + [session_id]
            )

        if 'status' in fields:
            logger.info("Session %s -> %s", session_id, fields['status'].value)

    def get_session(self, session_id: str) -> Optional[AnalysisSession]:
        row = self.database.execute(
            "SELECT * FROM analysis_sessions WHERE session_uuid = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def get_latest_session(self) -> Optional[AnalysisSession]:
        row = self.database.execute("""
            SELECT * FROM analysis_sessions ORDER BY start_time DESC, id DESC LIMIT 1
        """).fetchone()
        return _row_to_session(row) if row else None


def _row_to_session(row) -> AnalysisSession:
    return AnalysisSession(
        session_id=row["session_uuid"],
        total_photos=row["total_photos"],
        analyzed_photos=row["analyzed_photos"],
        duplicates_found=row["duplicates_found"],
        total_size_analyzed=row["total_size_analyzed"],
        potential_space_saved=row["potential_space_saved"],
        start_time=from_db_time(row["start_time"]),
        end_time=from_db_time(row["end_time"]),
        status=SessionStatus(row["status"]),
        error_message=row["error_message"],
    )

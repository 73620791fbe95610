# core/group_store.py

import logging
import sqlite3
from collections import OrderedDict
from typing import Iterable, List, Optional, Set

from photo_cleaner.core.database import PhotoDatabase, row_to_photo
from photo_cleaner.core.exceptions import GroupPersistenceError
from photo_cleaner.core.models import DuplicateGroup

logger = logging.getLogger(__name__)


class GroupStore:
    """
    Persistent duplicate groups, their membership and per-photo duplicate flags.

    Every multi-row mutation runs in one transaction. Member count, aggregate
    size and the recommended keep are recomputed here after each membership
    change, so callers never maintain them.
    """

    def __init__(self, database: PhotoDatabase):
        self.database = database

    # Lookups

    def find_group_by_key(self, group_key: str) -> Optional[int]:
        row = self.database.execute(
            "SELECT id FROM duplicate_groups WHERE group_hash = ?", (group_key,)
        ).fetchone()
        return row["id"] if row else None

    def find_group_for_photos(self, photo_ids: Iterable[int]) -> Optional[int]:
        """Oldest group that already holds any of the given photos"""
        ids = list(photo_ids)
        if not ids:
            return None
        placeholders = ",".join("?" * len(ids))
        row = self.database.execute(f"""
            SELECT MIN(group_id) AS group_id FROM duplicate_group_photos
            WHERE photo_id IN ({placeholders})
        """, ids).fetchone()
        return row["group_id"]

    def get_member_ids(self, group_id: int) -> Set[int]:
        rows = self.database.execute(
            "SELECT photo_id FROM duplicate_group_photos WHERE group_id = ?", (group_id,)
        ).fetchall()
        return {row["photo_id"] for row in rows}

    def get_group(self, group_id: int) -> Optional[DuplicateGroup]:
        groups = self._load_groups("WHERE g.id = ?", (group_id,))
        return groups[0] if groups else None

    def get_all_groups(self) -> List[DuplicateGroup]:
        """All groups with live members joined in, largest groups first"""
        return self._load_groups()

    # Mutations

    def create_group(self, group_key: str, member_photo_ids: List[int],
                     recommended_keep_id: Optional[int] = None) -> int:
        """Create a group and flag every non-keep member as duplicate"""
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute("""
                    INSERT INTO duplicate_groups (group_hash, photo_count, total_size,
                                                  recommended_keep_id)
                    VALUES (?, ?, 0, ?)
                """, (group_key, len(member_photo_ids), recommended_keep_id))
                group_id = cursor.lastrowid

                conn.executemany("""
                    INSERT INTO duplicate_group_photos (group_id, photo_id)
                    VALUES (?, ?)
                """, [(group_id, photo_id) for photo_id in member_photo_ids])

                self._recompute(conn, group_id)
        except sqlite3.Error as e:
            raise GroupPersistenceError(group_key, str(e)) from e

        logger.debug("Created group %d (%s) with %d photos",
                     group_id, group_key[:12], len(member_photo_ids))
        return group_id

    def merge_into_group(self, group_id: int, new_photo_ids: Iterable[int]) -> List[int]:
        """
        Append photos that are not members yet; returns the ids actually added.

        Photos already held by another group are skipped, so a photo belongs
        to at most one group. Running the same merge twice adds nothing.
        """
        try:
            with self.database.transaction() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM duplicate_groups WHERE id = ?", (group_id,)
                ).fetchone()
                if exists is None:
                    raise GroupPersistenceError(str(group_id), "group does not exist")

                taken = {row["photo_id"] for row in conn.execute(
                    "SELECT photo_id FROM duplicate_group_photos"
                )}
                added = []
                for photo_id in new_photo_ids:
                    if photo_id in taken:
                        continue
                    conn.execute("""
                        INSERT INTO duplicate_group_photos (group_id, photo_id)
                        VALUES (?, ?)
                    """, (group_id, photo_id))
                    taken.add(photo_id)
                    added.append(photo_id)

                if added:
                    self._recompute(conn, group_id)
        except sqlite3.Error as e:
            raise GroupPersistenceError(str(group_id), str(e)) from e

        if added:
            logger.debug("Merged %d photos into group %d", len(added), group_id)
        return added

    def reject_group(self, group_id: int):
        """
        Delete a group the user marked as "not a duplicate".

        Members that belong to no other group get their duplicate flag reset.
        """
        with self.database.transaction() as conn:
            member_ids = [row["photo_id"] for row in conn.execute(
                "SELECT photo_id FROM duplicate_group_photos WHERE group_id = ?", (group_id,)
            )]
            conn.execute("DELETE FROM duplicate_groups WHERE id = ?", (group_id,))
            self._reset_flags(conn, member_ids)
        logger.info("Rejected group %d (%d photos)", group_id, len(member_ids))

    def clear_all_groups(self):
        """Drop every group and reset all duplicate flags before a full re-analysis"""
        with self.database.transaction() as conn:
            conn.execute("UPDATE photos SET is_duplicate = 0, updated_at = CURRENT_TIMESTAMP")
            conn.execute("DELETE FROM duplicate_group_photos")
            conn.execute("DELETE FROM duplicate_groups")
        logger.info("Cleared all duplicate groups")

    def refresh_group(self, group_id: int) -> Optional[DuplicateGroup]:
        """
        Recompute a group after member deletions.

        Returns the updated group, or None when it dissolved because one or
        no live members remain.
        """
        with self.database.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM duplicate_groups WHERE id = ?", (group_id,)
            ).fetchone()
            if not exists or not self._recompute_or_dissolve(conn, group_id):
                return None
        return self.get_group(group_id)

    def detach_photos(self, photo_ids: Iterable[int]) -> List[int]:
        """
        Take photos out of whatever group holds them, e.g. after their content
        changed. Affected groups are recomputed, or dissolved when one or no
        live members remain. Returns the ids of the affected groups.
        """
        ids = list(photo_ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self.database.transaction() as conn:
            group_ids = [row["group_id"] for row in conn.execute(f"""
                SELECT DISTINCT group_id FROM duplicate_group_photos
                WHERE photo_id IN ({placeholders}) ORDER BY group_id
            """, ids)]
            if not group_ids:
                return []
            conn.execute(
                f"DELETE FROM duplicate_group_photos WHERE photo_id IN ({placeholders})", ids
            )
            self._reset_flags(conn, ids)
            for group_id in group_ids:
                self._recompute_or_dissolve(conn, group_id)
        logger.info("Detached %d photos from %d groups", len(ids), len(group_ids))
        return group_ids

    # Internals

    def _recompute_or_dissolve(self, conn: sqlite3.Connection, group_id: int) -> bool:
        """Recompute a group; False when it dissolved instead"""
        live = self._recompute(conn, group_id)
        if len(live) > 1:
            return True
        member_ids = [row["photo_id"] for row in conn.execute(
            "SELECT photo_id FROM duplicate_group_photos WHERE group_id = ?", (group_id,)
        )]
        conn.execute("DELETE FROM duplicate_groups WHERE id = ?", (group_id,))
        self._reset_flags(conn, member_ids)
        logger.info("Group %d dissolved, %d live members left", group_id, len(live))
        return False

    def _recompute(self, conn: sqlite3.Connection, group_id: int) -> List[sqlite3.Row]:
        """
        Refresh count, aggregate size and keep-recommendation from live members.

        The keep is the largest live member; the current keep wins ties,
        otherwise the earliest observed photo does.
        """
        live = conn.execute("""
            SELECT p.id, p.file_size FROM photos p
            JOIN duplicate_group_photos dgp ON p.id = dgp.photo_id
            WHERE dgp.group_id = ? AND p.is_deleted = 0
            ORDER BY p.id
        """, (group_id,)).fetchall()
        current = conn.execute(
            "SELECT recommended_keep_id FROM duplicate_groups WHERE id = ?", (group_id,)
        ).fetchone()["recommended_keep_id"]

        keep_id = None
        if live:
            largest = max(row["file_size"] or 0 for row in live)
            candidates = [row["id"] for row in live if (row["file_size"] or 0) == largest]
            keep_id = current if current in candidates else candidates[0]

        conn.execute("""
            UPDATE duplicate_groups
            SET photo_count = ?,
                total_size = ?,
                recommended_keep_id = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        """, (len(live), sum(row["file_size"] or 0 for row in live), keep_id, group_id))
        conn.execute("""
            UPDATE duplicate_group_photos SET is_recommended_keep = (photo_id IS ?)
            WHERE group_id = ?
        """, (keep_id, group_id))

        # Non-keep flags only ever grow here; the keep itself is never flagged.
        # Otherwise reject/clear/detach/dissolve are the only resets.
        duplicates = [(row["id"],) for row in live if row["id"] != keep_id]
        conn.executemany("""
            UPDATE photos SET is_duplicate = 1, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        """, duplicates)
        if keep_id is not None:
            conn.execute("""
                UPDATE photos SET is_duplicate = 0, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND is_duplicate = 1
            """, (keep_id,))
        return live

    @staticmethod
    def _reset_flags(conn: sqlite3.Connection, photo_ids: List[int]):
        conn.executemany("""
            UPDATE photos SET is_duplicate = 0, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
              AND NOT EXISTS (SELECT 1 FROM duplicate_group_photos WHERE photo_id = ?)
        """, [(photo_id, photo_id) for photo_id in photo_ids])

    def _load_groups(self, where: str = "", params=()) -> List[DuplicateGroup]:
        rows = self.database.execute(f"""
            SELECT g.id AS g_id, g.group_hash, g.photo_count, g.total_size,
                   g.recommended_keep_id, dgp.is_recommended_keep, p.*
            FROM duplicate_groups g
            LEFT JOIN duplicate_group_photos dgp ON dgp.group_id = g.id
            LEFT JOIN photos p ON p.id = dgp.photo_id AND p.is_deleted = 0
            {where}
            ORDER BY g.total_size DESC, g.id,
                     dgp.is_recommended_keep DESC, p.quality_score DESC, p.id
        """, params).fetchall()

        groups = OrderedDict()
        for row in rows:
            group = groups.get(row["g_id"])
            if group is None:
                group = DuplicateGroup(
                    id=row["g_id"],
                    group_key=row["group_hash"],
                    photo_count=row["photo_count"],
                    total_size=row["total_size"],
                    recommended_keep_id=row["recommended_keep_id"],
                )
                groups[row["g_id"]] = group
            if row["id"] is not None:
                group.photos.append(row_to_photo(row))
        return list(groups.values())

# scripts/maintenance.py

import argparse
import shutil
from datetime import datetime, timedelta
from typing import List

from photo_cleaner.config import SystemConfig
from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.group_store import GroupStore
from photo_cleaner.core.models import SessionStatus


def prune_sessions(db_path: str, days: int = 90) -> int:
    """Remove finished analysis sessions older than the retention window"""
    cutoff = (datetime.now() - timedelta(days=days)).isoformat()
    db = PhotoDatabase(db_path)
    try:
        with db.transaction() as conn:
            cursor = conn.execute("""
                DELETE FROM analysis_sessions
                WHERE start_time < ? AND status != ?
            """, (cutoff, SessionStatus.RUNNING.value))
            removed = cursor.rowcount
    finally:
        db.close()

    print(f"Removed {removed} old analysis sessions")
    return removed


def compact_database(db_path: str, backup: bool = True) -> str:
    """Compact SQLite database, keeping a timestamped backup"""
    backup_path = None
    if backup:
        backup_path = f"{db_path}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        shutil.copy(db_path, backup_path)
        print(f"Backup created: {backup_path}")

    db = PhotoDatabase(db_path)
    try:
        db.execute("VACUUM")
    finally:
        db.close()

    print("Database compacted")
    return backup_path


def verify_groups(db_path: str, repair: bool = False) -> List[str]:
    """
    Check stored groups against their live members.

    With repair, stale groups are recomputed and dissolved when they no
    longer hold two live photos.
    """
    db = PhotoDatabase(db_path)
    store = GroupStore(db)
    problems = []
    try:
        for group in store.get_all_groups():
            live = len(group.photos)
            if live < 2:
                problems.append(f"Group {group.id} has {live} live photos")
            elif group.photo_count != live:
                problems.append(
                    f"Group {group.id} records {group.photo_count} photos but has {live}"
                )
            elif group.recommended_keep is None:
                problems.append(f"Group {group.id} recommends a photo that is not a live member")
            else:
                continue
            if repair:
                store.refresh_group(group.id)

        shared = db.execute("""
            SELECT photo_id, COUNT(*) AS n FROM duplicate_group_photos
            GROUP BY photo_id HAVING n > 1
        """).fetchall()
        for row in shared:
            problems.append(f"Photo {row['photo_id']} belongs to {row['n']} groups")
    finally:
        db.close()

    if problems:
        print(f"Found {len(problems)} problems:")
        for problem in problems:
            print(f"  - {problem}")
    else:
        print("All duplicate groups are consistent")
    return problems


def show_status(db_path: str):
    """Print schema version and row counts"""
    db = PhotoDatabase(db_path)
    try:
        status = db.get_migration_status()
        photos = db.execute("SELECT COUNT(*) AS n FROM photos WHERE is_deleted = 0").fetchone()["n"]
        groups = db.execute("SELECT COUNT(*) AS n FROM duplicate_groups").fetchone()["n"]
        sessions = db.execute("SELECT COUNT(*) AS n FROM analysis_sessions").fetchone()["n"]
    finally:
        db.close()

    print(f"Schema version: {status['current_version']}/{status['latest_version']}")
    print(f"Live photos: {photos}")
    print(f"Duplicate groups: {groups}")
    print(f"Analysis sessions: {sessions}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Maintenance utilities")
    parser.add_argument('action', choices=['prune', 'compact', 'verify', 'status'])
    parser.add_argument('-c', '--config', default="config.yaml", help='YAML configuration file')
    parser.add_argument('--days', type=int, help='Session retention in days')
    parser.add_argument('--repair', action='store_true', help='Fix inconsistent groups')

    args = parser.parse_args()
    config = SystemConfig.load(args.config)

    if args.action == 'prune':
        prune_sessions(config.database_path, args.days or config.session_retention_days)
    elif args.action == 'compact':
        compact_database(config.database_path)
    elif args.action == 'verify':
        verify_groups(config.database_path, repair=args.repair)
    elif args.action == 'status':
        show_status(config.database_path)

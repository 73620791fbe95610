# cli.py

import argparse
import json
import sys

from photo_cleaner.components.duplicate_detector import DuplicateDetectionService
from photo_cleaner.components.photo_library import FileSystemPhotoLibrary
from photo_cleaner.config import SystemConfig
from photo_cleaner.core.database import PhotoDatabase
from photo_cleaner.core.exceptions import PhotoCleanerError
from photo_cleaner.utils.file_utils import format_file_size
from photo_cleaner.utils.logging_config import setup_logging_from_config
from photo_cleaner.utils.report_generator import DuplicateReportGenerator


def build_service(args, config: SystemConfig) -> DuplicateDetectionService:
    library = FileSystemPhotoLibrary(
        getattr(args, 'directory', None) or ".",
        trash_dir=None if getattr(args, 'no_trash', False) else config.trash_dir,
    )
    return DuplicateDetectionService(PhotoDatabase(config.database_path),
                                     library=library, config=config)


def print_groups(groups):
    if not groups:
        print("No duplicate groups.")
        return
    for group in groups:
        print(f"\nGroup {group.id} ({group.photo_count} photos, "
              f"{format_file_size(group.space_saved)} reclaimable):")
        for photo in group.photos:
            marker = "keep" if photo.id == group.recommended_keep_id else "    "
            print(f"  [{marker}] #{photo.id} {photo.file_path} "
                  f"({format_file_size(photo.file_size)})")


def analyze_command(args, service: DuplicateDetectionService):
    """Scan a directory and group duplicate photos"""
    print(f"Scanning for duplicates in: {args.directory}")

    result = service.analyze(
        clear_existing_groups=True if args.clear else None,
        threshold=args.threshold,
    )
    print(service.format_analysis_result(result))
    for error in result.errors:
        print(f"  ! {error.kind} failure for {error.item}: {error.message}")

    if args.report:
        DuplicateReportGenerator().generate_report(result.groups, args.report)
        print(f"Report saved to: {args.report}")
    elif args.verbose:
        print_groups(result.groups)


def groups_command(args, service: DuplicateDetectionService):
    """List persisted duplicate groups"""
    if args.json:
        print(json.dumps(service.generate_duplicate_report(), indent=2))
    else:
        print_groups(service.get_groups())


def reject_command(args, service: DuplicateDetectionService):
    service.reject_group(args.group_id)
    print(f"Group {args.group_id} rejected")


def delete_command(args, service: DuplicateDetectionService):
    """Delete selected members of a duplicate group"""
    result = service.delete_group_members(args.group_id, args.photo_ids)
    print(f"Deleted {result.deleted_count} photos")
    for operation in result.operations:
        if operation.get("destination"):
            print(f"  {operation['source']} -> {operation['destination']}")
    for error in result.errors:
        print(f"  ! {error}")
    if result.group is None:
        print(f"Group {args.group_id} no longer has duplicates")
    return 0 if not result.errors else 1


def session_command(args, service: DuplicateDetectionService):
    session = service.get_latest_session()
    if session is None:
        print("No analysis has been run yet.")
        return
    print(f"Session {session.session_id}: {session.status.value}")
    print(f"  Started:   {session.start_time}")
    print(f"  Finished:  {session.end_time or '-'}")
    print(f"  Photos:    {session.analyzed_photos}/{session.total_photos} analyzed")
    print(f"  Duplicates found: {session.duplicates_found}")
    print(f"  Size analyzed: {format_file_size(session.total_size_analyzed)}")
    print(f"  Potential savings: {format_file_size(session.potential_space_saved)}")
    if session.error_message:
        print(f"  Error: {session.error_message}")


def report_command(args, service: DuplicateDetectionService):
    summary = DuplicateReportGenerator().generate_report(service.get_groups(), args.output)
    print(f"Report with {summary['total_groups']} groups saved to: {args.output}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Photo Cleaner - duplicate photo detection"
    )
    parser.add_argument('-c', '--config', default="config.yaml", help='YAML configuration file')
    parser.add_argument('--db', help='Override the database path')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    analyze_parser = subparsers.add_parser('analyze', help='Detect duplicate photos')
    analyze_parser.add_argument('directory', help='Directory to scan')
    analyze_parser.add_argument('-t', '--threshold', type=int,
                                help='Hamming distance threshold (bits)')
    analyze_parser.add_argument('--clear', action='store_true',
                                help='Discard existing groups before grouping')
    analyze_parser.add_argument('-r', '--report', help='Output HTML report path')
    analyze_parser.add_argument('-v', '--verbose', action='store_true',
                                help='Print every group found')
    analyze_parser.set_defaults(func=analyze_command)

    groups_parser = subparsers.add_parser('groups', help='List duplicate groups')
    groups_parser.add_argument('--json', action='store_true', help='Print a JSON summary')
    groups_parser.set_defaults(func=groups_command)

    reject_parser = subparsers.add_parser('reject', help='Mark a group as not duplicates')
    reject_parser.add_argument('group_id', type=int)
    reject_parser.set_defaults(func=reject_command)

    delete_parser = subparsers.add_parser('delete', help='Delete photos of a group')
    delete_parser.add_argument('group_id', type=int)
    delete_parser.add_argument('photo_ids', type=int, nargs='+')
    delete_parser.add_argument('--no-trash', action='store_true',
                               help='Delete files instead of moving them to the trash')
    delete_parser.set_defaults(func=delete_command)

    session_parser = subparsers.add_parser('session', help='Show the latest analysis session')
    session_parser.set_defaults(func=session_command)

    report_parser = subparsers.add_parser('report', help='Write an HTML report of all groups')
    report_parser.add_argument('output', help='Output HTML report path')
    report_parser.set_defaults(func=report_command)

    return parser


def main_cli(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = SystemConfig.load(args.config)
    if args.db:
        config.database_path = args.db
    setup_logging_from_config(config)

    service = build_service(args, config)
    try:
        return args.func(args, service) or 0
    except PhotoCleanerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.database.close()


if __name__ == "__main__":
    sys.exit(main_cli())

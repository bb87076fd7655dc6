#!/usr/bin/env python3
"""
CLI for backup export/validate/import operations.

Usage:
    familyarchive-backup export   --out backup.zip [--no-photos] [--no-audit-logs] [--audit-log-days 30] [--redact-secrets]
    familyarchive-backup validate --in backup.zip [--json]
    familyarchive-backup import   --in backup.zip --strategy merge [--no-backup] [--collections relationships,suggestions]
    familyarchive-backup snapshots list
    familyarchive-backup snapshots get --id <snapshot-id> --out restore.zip
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from familyarchive.config.config_loader import BackupConfig
from familyarchive.core.exceptions import BackupError
from familyarchive.export.serializer import ExportOptions
from familyarchive.importer.importer import ImportOptions, ImportState
from familyarchive.importer.strategies import ImportStrategy
from familyarchive.service import BackupService
from familyarchive.validate.validator import PreviewReport


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging."""
    log_level = logging.DEBUG if verbose else getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_service(args) -> BackupService:
    config = BackupConfig(Path(args.config) if args.config else None)
    return BackupService.from_config(config)


def cmd_export(args) -> int:
    """Export live state to an archive file."""
    logger = logging.getLogger(__name__)

    try:
        options = ExportOptions(
            include_photos=not args.no_photos,
            include_audit_logs=not args.no_audit_logs,
            audit_log_days=args.audit_log_days,
            redact_secrets=args.redact_secrets,
        )
    except ValueError as e:
        logger.error(str(e))
        return 1

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    partial = out_path.with_name(out_path.name + ".partial")

    service = build_service(args)
    try:
        stream = service.export(options, actor_id=args.actor)
        with open(partial, "wb") as f:
            stream.write_to(f)
        partial.replace(out_path)
    except (BackupError, OSError) as e:
        logger.error(f"Export failed: {e}")
        if partial.exists():
            partial.unlink()
        return 1
    finally:
        service.close()

    report = stream.report
    print(f"Exported {out_path} ({report.bytes_written} bytes)")
    for name, count in report.counts.items():
        print(f"  {name}: {count}")
    print(f"  photos: {report.photos_exported} exported, {report.photos_skipped} skipped")

    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))
    return 0


def print_preview(report: PreviewReport) -> None:
    print(f"Archive v{report.schema_version} from {report.source_instance} ({report.exported_at})")
    for name, summary in report.collections.items():
        print(
            f"  {name}: {summary.new} new, {summary.identical} identical, "
            f"{summary.conflicting} conflicting"
        )
    print(
        f"  photos: {report.photos.new} new, {report.photos.identical} identical, "
        f"{report.photos.conflicting} conflicting"
    )
    for conflict in report.conflicts:
        fields = ", ".join(d.field for d in conflict.diffs)
        print(f"  conflict {conflict.collection}/{conflict.record_id} [{conflict.severity.value}]: {fields}")
    for duplicate in report.duplicates:
        print(
            f"  duplicate {duplicate.collection}/{duplicate.record_id} of {duplicate.existing_id} "
            f"[{duplicate.severity.value}]: {duplicate.description}"
        )
    for warning in report.reference_warnings:
        print(f"  warning: {warning}")
    for warning in report.warnings:
        print(f"  warning: {warning}")


def cmd_validate(args) -> int:
    """Preview an archive against live state."""
    logger = logging.getLogger(__name__)

    in_path = Path(args.input)
    if not in_path.exists():
        logger.error(f"Archive not found: {in_path}")
        return 1

    service = build_service(args)
    try:
        report = service.validate(in_path, actor_id=args.actor)
    except BackupError as e:
        logger.error(f"Invalid backup: {e}")
        report = PreviewReport.invalid(str(e))
    finally:
        service.close()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    elif report.is_valid:
        print_preview(report)

    return 0 if report.is_valid else 1


def cmd_import(args) -> int:
    """Apply an archive to live state."""
    logger = logging.getLogger(__name__)

    in_path = Path(args.input)
    if not in_path.exists():
        logger.error(f"Archive not found: {in_path}")
        return 1

    collections = None
    if args.collections:
        collections = [c.strip() for c in args.collections.split(",") if c.strip()]

    try:
        options = ImportOptions(
            strategy=ImportStrategy(args.strategy),
            create_backup_before_import=not args.no_backup,
            import_photos=not args.no_photos,
            import_audit_logs=args.audit_logs,
            collections=collections,
        )
    except ValueError as e:
        logger.error(f"Invalid import options: {e}")
        return 1

    service = build_service(args)
    try:
        report = service.import_archive(in_path, options, actor_id=args.actor)
    except BackupError as e:
        logger.error(f"Import failed: {e}")
        return 1
    finally:
        service.close()

    print(f"Import {report.status.value} (strategy: {report.strategy})")
    for name, result in report.collections.items():
        print(
            f"  {name}: {result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
    print(
        f"  photos: {report.photos_created} created, {report.photos_updated} updated, "
        f"{report.photos_skipped} skipped, {report.photos_failed} failed"
    )
    if report.rollback_snapshot_id:
        print(f"  rollback snapshot: {report.rollback_snapshot_id}")
    if report.pending_collections:
        print(f"  pending: {','.join(report.pending_collections)}")
    for error in report.errors:
        print(f"  error: {error}")

    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))

    return 0 if report.status == ImportState.COMPLETED else 1


def cmd_snapshots(args) -> int:
    """List or retrieve rollback snapshots."""
    logger = logging.getLogger(__name__)

    service = build_service(args)
    try:
        if args.snapshot_command == "list":
            infos = service.list_rollback_snapshots()
            if args.json:
                print(json.dumps([i.to_dict() for i in infos], indent=2))
            else:
                for info in infos:
                    flag = " (encrypted)" if info.encrypted else ""
                    print(
                        f"{info.snapshot_id}  {info.created_at.isoformat()}  "
                        f"{info.size_bytes} bytes{flag}  {info.reason or ''}"
                    )
            return 0

        if args.snapshot_command == "get":
            out_path = Path(args.out)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                chunks = service.open_rollback_snapshot(args.id)
            except KeyError:
                logger.error(f"Snapshot not found: {args.id}")
                return 1
            with open(out_path, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
            logger.info(f"Wrote snapshot {args.id} to {out_path}")
            return 0

        print("No snapshots command specified. Use --help for usage.", file=sys.stderr)
        return 1
    finally:
        service.close()


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Family Archive Backup CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--actor", help="Actor (user id) performing the operation")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Export command
    export_parser = subparsers.add_parser("export", help="Export live state to an archive")
    export_parser.add_argument("--out", required=True, help="Output archive path")
    export_parser.add_argument("--no-photos", action="store_true", help="Leave photos out")
    export_parser.add_argument("--no-audit-logs", action="store_true", help="Leave audit logs out")
    export_parser.add_argument("--audit-log-days", type=int, default=90,
                               help="Audit log window in days (1-365, default: 90)")
    export_parser.add_argument("--redact-secrets", action="store_true",
                               help="Scrub secret-looking values in JSON fields (archive is not a full backup)")
    export_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Preview an archive against live state")
    validate_parser.add_argument("--in", dest="input", required=True, help="Input archive path")
    validate_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    # Import command
    import_parser = subparsers.add_parser("import", help="Apply an archive to live state")
    import_parser.add_argument("--in", dest="input", required=True, help="Input archive path")
    import_parser.add_argument("--strategy", choices=[s.value for s in ImportStrategy],
                               default="skip", help="Treatment of existing records (default: skip)")
    import_parser.add_argument("--no-backup", action="store_true",
                               help="Do not create a rollback snapshot first")
    import_parser.add_argument("--no-photos", action="store_true", help="Do not import photos")
    import_parser.add_argument("--audit-logs", action="store_true", help="Import audit logs too")
    import_parser.add_argument("--collections",
                               help="Comma-separated collections to apply (resume a partial import)")
    import_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    # Snapshots command
    snapshots_parser = subparsers.add_parser("snapshots", help="Rollback snapshots")
    snapshot_sub = snapshots_parser.add_subparsers(dest="snapshot_command")
    list_parser = snapshot_sub.add_parser("list", help="List rollback snapshots")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    get_parser = snapshot_sub.add_parser("get", help="Write a rollback snapshot to a file")
    get_parser.add_argument("--id", required=True, help="Snapshot id")
    get_parser.add_argument("--out", required=True, help="Output archive path")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(verbose=args.verbose)

    if args.command == "export":
        return cmd_export(args)
    elif args.command == "validate":
        return cmd_validate(args)
    elif args.command == "import":
        return cmd_import(args)
    elif args.command == "snapshots":
        return cmd_snapshots(args)
    else:
        print("No command specified. Use --help for usage.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Command line interface for bckp."""

import argparse
import sys
from pathlib import Path

from snapshot_shuttle.config import (
    AppConfig,
    EngineContext,
    default_config_path,
    load_config,
    save_config,
)
from snapshot_shuttle.encryption import CertificateDirectoryResolver
from snapshot_shuttle.errors import BackupError, ValidationError
from snapshot_shuttle.logs import setup_logger
from snapshot_shuttle.models import (
    BackupOptions,
    BackupProgress,
    EncryptionMode,
    EncryptionSettings,
    PrunePolicy,
)
from snapshot_shuttle.runtime import (
    format_size,
    init_repo,
    list_snapshots,
    run_backup,
    run_prune,
    run_restore,
)
from snapshot_shuttle.usage import RepositoriesStore

DEFAULT_CERT_DIR = Path.home() / ".config" / "bckp" / "certs"

CONFIG_KEYS = (
    "repo.path",
    "backup.include",
    "backup.exclude",
    "backup.concurrency",
    "remote.url",
    "logging.debug",
)


def _config_path(args: argparse.Namespace) -> Path:
    return Path(args.config) if args.config else default_config_path()


def build_context(args: argparse.Namespace, cfg: AppConfig) -> EngineContext:
    resolver = None
    if getattr(args, "recipient", None):
        resolver = CertificateDirectoryResolver(args.cert_dir)
    return EngineContext(
        config=cfg,
        certificate_resolver=resolver,
        usage=RepositoriesStore(str(_config_path(args).parent / "repositories.json")),
        force_detach=getattr(args, "force_detach", False),
    )


def resolve_target(args: argparse.Namespace, cfg: AppConfig) -> str:
    target = args.remote or args.repo or cfg.remote_url or cfg.repo_path
    if not target:
        raise ValidationError("No repository given; pass --repo or --remote, or set repo.path")
    return target


def print_progress(progress: BackupProgress) -> None:
    print(
        f"\r  {progress.processed_files}/{progress.total_files} files, "
        f"{format_size(progress.processed_bytes)}/{format_size(progress.total_bytes)}",
        end="",
        file=sys.stderr,
        flush=True,
    )


def cmd_init(args: argparse.Namespace, ctx: EngineContext) -> int:
    """Initialize a repository."""
    init_repo(resolve_target(args, ctx.config), ctx)
    return 0


def cmd_backup(args: argparse.Namespace, ctx: EngineContext) -> int:
    """Back up one or more directories."""
    cfg = ctx.config
    encryption = None
    if args.recipient:
        encryption = EncryptionSettings(EncryptionMode.CERTIFICATE, tuple(args.recipient))
    options = BackupOptions(
        include=args.include if args.include else cfg.include,
        exclude=args.exclude if args.exclude else cfg.exclude,
        concurrency=args.concurrency or cfg.concurrency,
        encryption=encryption,
    )
    try:
        run_backup(
            resolve_target(args, cfg),
            args.sources,
            options,
            ctx,
            progress=None if args.quiet else print_progress,
            plain=args.plain,
        )
    finally:
        if not args.quiet:
            print(file=sys.stderr)
        if ctx.certificate_resolver is not None:
            ctx.certificate_resolver.cleanup()
    return 0


def cmd_snapshots(args: argparse.Namespace, ctx: EngineContext) -> int:
    """List snapshots."""
    list_snapshots(resolve_target(args, ctx.config), ctx)
    return 0


def cmd_restore(args: argparse.Namespace, ctx: EngineContext) -> int:
    """Restore a snapshot."""
    run_restore(
        resolve_target(args, ctx.config),
        args.dest,
        args.snapshot_id,
        args.concurrency or ctx.config.concurrency,
        ctx,
    )
    return 0


def cmd_prune(args: argparse.Namespace, ctx: EngineContext) -> int:
    """Delete snapshots outside the retention policy."""
    policy = PrunePolicy(keep_last=args.keep_last, keep_days=args.keep_days)
    run_prune(resolve_target(args, ctx.config), policy, ctx)
    return 0


def _config_values(cfg: AppConfig) -> dict:
    return {
        "repo.path": cfg.repo_path or "",
        "backup.include": ",".join(cfg.include),
        "backup.exclude": ",".join(cfg.exclude),
        "backup.concurrency": "" if cfg.concurrency is None else str(cfg.concurrency),
        "remote.url": "<set>" if cfg.remote_url else "",
        "logging.debug": "true" if cfg.logging_debug else "false",
    }


def cmd_config_show(args: argparse.Namespace, ctx: EngineContext) -> int:
    print(f"# {_config_path(args)}")
    for key, value in _config_values(ctx.config).items():
        print(f"{key}={value}")
    return 0


def cmd_config_set(args: argparse.Namespace, ctx: EngineContext) -> int:
    cfg = ctx.config
    value = args.value.strip()
    if args.key == "repo.path":
        cfg.repo_path = value or None
    elif args.key == "backup.include":
        cfg.include = [v.strip() for v in value.split(",") if v.strip()]
    elif args.key == "backup.exclude":
        cfg.exclude = [v.strip() for v in value.split(",") if v.strip()]
    elif args.key == "backup.concurrency":
        try:
            cfg.concurrency = int(value) if value else None
        except ValueError as e:
            raise ValidationError(f"Invalid concurrency: {value}") from e
    elif args.key == "remote.url":
        cfg.remote_url = value or None
    elif args.key == "logging.debug":
        cfg.logging_debug = value.lower() in ("1", "true", "yes", "on")
    path = save_config(cfg, _config_path(args))
    print(f"Saved {args.key} to {path}")
    return 0


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--repo", help="Local repository path")
    group.add_argument(
        "--remote",
        help="Blob container URL including its SAS token (https://...?sv=...)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bckp", description="Snapshot backup tool")
    parser.add_argument("--config", help="Config file (defaults to ~/.config/bckp/config)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--log-dir", dest="log_dir", help="Directory for NDJSON log files")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # init
    p_init = sub.add_parser("init", help="Initialize a repository")
    _add_target_args(p_init)
    p_init.set_defaults(func=cmd_init)

    # backup
    p_backup = sub.add_parser("backup", help="Create a snapshot")
    _add_target_args(p_backup)
    p_backup.add_argument("sources", nargs="+", help="Directories to back up")
    p_backup.add_argument("--include", action="append", default=[], help="Include glob (repeatable)")
    p_backup.add_argument("--exclude", action="append", default=[], help="Exclude glob (repeatable)")
    p_backup.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    p_backup.add_argument(
        "--recipient",
        action="append",
        default=[],
        help="Certificate selector (sha1:, cn:, label:); enables container encryption",
    )
    p_backup.add_argument(
        "--cert-dir",
        dest="cert_dir",
        default=str(DEFAULT_CERT_DIR),
        help="Directory holding recipient certificates",
    )
    p_backup.add_argument("--plain", action="store_true", help="Write a plain snapshot directory")
    p_backup.add_argument(
        "--force-detach",
        dest="force_detach",
        action="store_true",
        help="Detach the staging container even when files are open under it",
    )
    p_backup.add_argument("--quiet", "-q", action="store_true", help="No progress output")
    p_backup.set_defaults(func=cmd_backup)

    # snapshots
    p_snapshots = sub.add_parser("snapshots", help="List snapshots")
    _add_target_args(p_snapshots)
    p_snapshots.set_defaults(func=cmd_snapshots)

    # restore
    p_restore = sub.add_parser("restore", help="Restore a snapshot")
    _add_target_args(p_restore)
    p_restore.add_argument("dest", help="Destination directory")
    p_restore.add_argument(
        "--snapshot-id",
        "-s",
        dest="snapshot_id",
        default=None,
        help="Snapshot ID to restore (defaults to newest)",
    )
    p_restore.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    p_restore.add_argument("--force-detach", dest="force_detach", action="store_true")
    p_restore.set_defaults(func=cmd_restore)

    # prune
    p_prune = sub.add_parser("prune", help="Apply a retention policy")
    _add_target_args(p_prune)
    p_prune.add_argument("--keep-last", dest="keep_last", type=int, default=None)
    p_prune.add_argument("--keep-days", dest="keep_days", type=int, default=None)
    p_prune.set_defaults(func=cmd_prune)

    # config
    p_config = sub.add_parser("config", help="Show or change settings")
    config_sub = p_config.add_subparsers(dest="config_cmd", required=True)
    p_show = config_sub.add_parser("show", help="Print effective settings")
    p_show.set_defaults(func=cmd_config_show)
    p_set = config_sub.add_parser("set", help="Set one setting")
    p_set.add_argument("key", choices=CONFIG_KEYS)
    p_set.add_argument("value")
    p_set.set_defaults(func=cmd_config_set)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(_config_path(args))
        setup_logger(
            Path(args.log_dir) if args.log_dir else None,
            debug=args.debug or cfg.logging_debug,
        )
        ctx = build_context(args, cfg)
        return args.func(args, ctx)
    except BackupError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

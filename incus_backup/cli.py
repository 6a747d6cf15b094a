"""Command line interface for incus-backup.

Usage:
    incus-backup list [kind] --target dir:/backups [-o json]
    incus-backup backup instances web db --target restic:/srv/restic --snapshot
    incus-backup restore instance web --target dir:/backups --replace
    incus-backup restore config --target dir:/backups --apply
    incus-backup prune --target dir:/backups --keep 3
    incus-backup verify --target dir:/backups
"""

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, TextIO

from . import __version__
from ._identity import ResourceKind, parse_timestamp
from ._prune import PRUNE_COLUMNS
from ._reconcile import render_plan
from ._storage import create_backend
from ._utils import configure_logging, logger
from ._verify import VERIFY_COLUMNS
from .backup.exporters import RestoreOptions
from .backup.manager import BackupManager
from .backup.models import STATUS_OK
from .config import IncusBackupConfig, validate_config
from .errors import BackupError, ConfigurationError
from .progress import ProgressPrinter
from .restic.detect import detect, is_compatible
from .target import parse_target

LIST_COLUMNS = ("TYPE", "PROJECT", "POOL", "NAME", "FINGERPRINT", "TIMESTAMP")
RESTORE_COLUMNS = ("ACTION", "PROJECT", "POOL", "NAME", "VERSION")


@dataclass
class Safety:
    """Global safety flags."""
    dry_run: bool = False
    yes: bool = False
    force: bool = False


def confirm(safety: Safety, question: str, stdin: TextIO, stdout: TextIO) -> bool:
    """Ask a yes/no question; dry runs decline and ``--yes`` accepts."""
    if safety.dry_run:
        return False
    if safety.yes:
        return True
    stdout.write(f"{question.strip()} [y/N]: ")
    stdout.flush()
    answer = stdin.readline().strip().lower()
    return answer in ("y", "yes")


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Align columns with two spaces of padding."""
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(str(cell))) for w, cell in zip(widths, row)]
    lines = []
    for row in [list(headers)] + [list(r) for r in rows]:
        cells = [str(cell).ljust(width) for cell, width in zip(row, widths)]
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines) + "\n"


def _kinds(value: Optional[str]) -> List[ResourceKind]:
    return ResourceKind.from_filter(value)


def _timestamp(value: Optional[str]) -> Optional[str]:
    if value:
        parse_timestamp(value)
    return value or None


# Parser --------------------------------------------------------------------

def _add_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--target", required=True, help="Backend target (dir:/path or restic:<repository>)")


def _add_output(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-o", "--output", choices=["table", "json"], default="table", help="Output format")


def _add_existing(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--replace", action="store_true", help="Replace an existing resource")
    group.add_argument("--skip-existing", action="store_true", help="Skip resources that already exist")


def _add_global_flags(parser: argparse.ArgumentParser, default: Any = False) -> None:
    parser.add_argument("--dry-run", action="store_true", default=default, help="Show planned actions without making changes")
    parser.add_argument("-y", "--yes", action="store_true", default=default, help="Assume 'yes' to prompts")
    parser.add_argument("--force", action="store_true", default=default, help="Allow destructive config deletes; implies yes for version warnings")
    parser.add_argument("-v", "--verbose", action="store_true", default=default, help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="incus-backup",
        description="Back up and restore instances, custom volumes and configuration",
    )
    _add_global_flags(parser)
    # accepted after any subcommand; unset flags keep the root value
    common = argparse.ArgumentParser(add_help=False)
    _add_global_flags(common, default=argparse.SUPPRESS)

    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", parents=[common], help="List stored snapshots")
    list_cmd.add_argument("kind", nargs="?", default="all", help="all, instances, volumes, images or config")
    _add_target(list_cmd)
    _add_output(list_cmd)

    backup = commands.add_parser("backup", parents=[common], help="Back up resources")
    backup.add_argument("what", choices=["all", "config", "instances", "volumes"])
    backup.add_argument("names", nargs="*", help="Instance or volume names (default: all)")
    _add_target(backup)
    backup.add_argument("--project", default=None, help="Project (default: INCUS_PROJECT or 'default')")
    backup.add_argument("--pool", default=None, help="Restrict volumes to one storage pool")
    backup.add_argument("--optimized", action="store_true", default=None, help="Use storage-optimized export format")
    backup.add_argument("--snapshot", action="store_true", default=None, help="Export from a temporary snapshot")

    restore = commands.add_parser("restore", parents=[common], help="Restore resources")
    restore_commands = restore.add_subparsers(dest="what", required=True)

    restore_config = restore_commands.add_parser("config", parents=[common], help="Preview or apply a config snapshot")
    _add_target(restore_config)
    restore_config.add_argument("--version", default=None, help="Snapshot timestamp (default: latest)")
    restore_config.add_argument("--apply", action="store_true", help="Apply changes (default: preview)")
    _add_output(restore_config)

    for name, plural, kind in (("instance", "instances", "instance"), ("volume", "volumes", "volume")):
        single = restore_commands.add_parser(name, parents=[common], help=f"Restore one {kind}")
        single.add_argument("names", nargs=1, metavar="NAME")
        single.add_argument("--target-name", default=None, help=f"New name for the restored {kind}")
        many = restore_commands.add_parser(plural, parents=[common], help=f"Restore several {kind}s (default: all stored)")
        many.add_argument("names", nargs="*", metavar="NAME")
        for sub in (single, many):
            _add_target(sub)
            sub.add_argument("--project", default=None, help="Project")
            sub.add_argument("--version", default=None, help="Snapshot timestamp (default: latest)")
            if kind == "volume":
                sub.add_argument("--pool", required=(sub is single), default=None, help="Storage pool")
            _add_existing(sub)

    restore_all = restore_commands.add_parser("all", parents=[common], help="Restore config plan, volumes and instances")
    _add_target(restore_all)
    restore_all.add_argument("--project", default=None, help="Project")
    restore_all.add_argument("--version", default=None, help="Snapshot timestamp for every resource (default: latest of each)")
    restore_all.add_argument("--apply-config", action="store_true", help="Apply the config plan before restoring")
    _add_existing(restore_all)

    prune = commands.add_parser("prune", parents=[common], help="Delete old snapshots, keeping the newest N")
    prune.add_argument("kind", nargs="?", default="all")
    _add_target(prune)
    prune.add_argument("--keep", type=int, default=None, help="Snapshots to keep per resource (default: PRUNE_KEEP or 3)")
    prune.add_argument("--version", default=None, help="Only delete this timestamp")
    prune.add_argument("--no-reclaim", action="store_true", help="restic: forget without pruning data")

    verify = commands.add_parser("verify", parents=[common], help="Check stored files against checksums.txt")
    verify.add_argument("kind", nargs="?", default="all")
    _add_target(verify)
    _add_output(verify)

    commands.add_parser("version", parents=[common], help="Show version information")
    return parser


# Commands ------------------------------------------------------------------

class App:
    """Runs one parsed command against a host client and a target."""

    def __init__(
        self,
        args: argparse.Namespace,
        config: IncusBackupConfig,
        host_factory: Callable[[], Any],
        stdin: TextIO,
        stdout: TextIO,
    ):
        self.args = args
        self.config = config
        self.host_factory = host_factory
        self.stdin = stdin
        self.stdout = stdout
        self.safety = Safety(dry_run=args.dry_run, yes=args.yes, force=args.force)

    def echo(self, text: str = "") -> None:
        self.stdout.write(text + "\n")

    def confirm(self, question: str) -> bool:
        return confirm(self.safety, question, self.stdin, self.stdout)

    def dump_json(self, value: Any) -> None:
        self.stdout.write(json.dumps(value, indent=2) + "\n")

    async def _check_restic(self) -> None:
        info = await detect(self.config.restic)
        if is_compatible(info.version, self.config.restic.required_version):
            return
        message = (
            f"restic {info.version} at {info.path} is older than the supported "
            f"{self.config.restic.required_version}"
        )
        logger.warning(message)
        if self.safety.force or self.safety.yes:
            return
        if not self.confirm(f"{message}. Continue anyway?"):
            raise ConfigurationError("aborted: unsupported restic version")

    async def manager(self, with_host: bool = True) -> BackupManager:
        target = parse_target(self.args.target)
        if target.scheme == "restic":
            await self._check_restic()
        backend = create_backend(target, self.config)
        host = self.host_factory() if with_host else None
        return BackupManager(host, backend, self.config.backup)

    async def run(self) -> int:
        handler = getattr(self, f"cmd_{self.args.command}")
        return await handler()

    async def cmd_version(self) -> int:
        self.echo(f"incus-backup {__version__}")
        try:
            info = await detect(self.config.restic)
        except BackupError as e:
            self.echo(f"restic: not available ({e})")
            return 0
        status = "ok" if is_compatible(info.version, self.config.restic.required_version) else "unsupported"
        self.echo(f"restic {info.version} ({info.path}, {status})")
        return 0

    async def cmd_list(self) -> int:
        kinds = _kinds(self.args.kind)
        manager = await self.manager(with_host=False)
        entries = await manager.list(kinds)
        if self.args.output == "json":
            self.dump_json([e.to_dict() for e in entries])
        else:
            rows = [[e.type, e.key.project, e.key.pool, e.key.name, e.key.fingerprint, e.timestamp] for e in entries]
            self.stdout.write(render_table(LIST_COLUMNS, rows))
        return 0

    async def cmd_backup(self) -> int:
        args = self.args
        manager = await self.manager()
        project = args.project or self.config.backup.default_project
        if self.safety.dry_run:
            self.echo(f"Would back up {args.what} of project {project} to {args.target}")
            return 0

        progress = ProgressPrinter()
        try:
            if args.what == "config":
                stored = [await manager.backup_config()]
            elif args.what == "instances":
                stored = await manager.backup_instances(project, args.names, args.optimized, args.snapshot, progress)
            elif args.what == "volumes":
                stored = await manager.backup_volumes(
                    project, args.names, args.pool, args.optimized, args.snapshot, progress
                )
            else:
                stored = await manager.backup_all(project, args.optimized, args.snapshot, progress)
        finally:
            progress.finish()
        for item in stored:
            self.echo(f"{item.key.describe()} @ {item.timestamp}: {item.size:,} bytes")
        return 0

    async def cmd_restore(self) -> int:
        handler = {
            "config": self._restore_config,
            "instance": self._restore_instances,
            "instances": self._restore_instances,
            "volume": self._restore_volumes,
            "volumes": self._restore_volumes,
            "all": self._restore_all,
        }[self.args.what]
        return await handler()

    def _print_config_plan(self, result) -> None:
        if getattr(self.args, "output", "table") == "json":
            self.dump_json({"timestamp": result.snapshot.timestamp, "plan": result.plan.to_dict()})
            return
        self.echo(f"Config preview ({result.snapshot.timestamp})")
        for line in render_plan(result.plan):
            self.echo(f"  {line}")

    async def _restore_config(self) -> int:
        manager = await self.manager()
        timestamp = _timestamp(self.args.version)
        result = await manager.restore_config(timestamp, apply=False)
        self._print_config_plan(result)
        if not self.args.apply or self.safety.dry_run or result.plan.empty:
            return 0
        if not self.confirm("Apply config changes?"):
            return 0
        result = await manager.restore_config(result.snapshot.timestamp, apply=True, force=self.safety.force)
        summary = result.summary
        for label in ("storage", "network", "project"):
            self.echo(
                f"{label}: created={summary.created.get(label, 0)} "
                f"updated={summary.updated.get(label, 0)} deleted={summary.deleted.get(label, 0)}"
            )
        for skipped in summary.skipped_deletes:
            self.echo(f"skipped delete {skipped} (use --force)")
        return 0

    def _restore_options(self) -> RestoreOptions:
        return RestoreOptions(
            replace=self.args.replace,
            skip_existing=self.args.skip_existing,
            confirm=self.confirm,
        )

    def _print_restore_plans(self, plans, options: RestoreOptions) -> None:
        rows = [
            [plan.action(options), plan.project, plan.pool, plan.target_name, plan.snapshot.timestamp]
            for plan in plans
        ]
        self.stdout.write(render_table(RESTORE_COLUMNS, rows))

    async def _restore_instances(self) -> int:
        args = self.args
        manager = await self.manager()
        plans = await manager.plan_instance_restores(
            args.project, args.names, _timestamp(args.version), getattr(args, "target_name", None)
        )
        return await self._run_restores(plans, manager.restore_instances)

    async def _restore_volumes(self) -> int:
        args = self.args
        manager = await self.manager()
        plans = await manager.plan_volume_restores(
            args.project, args.pool, args.names, _timestamp(args.version), getattr(args, "target_name", None)
        )
        return await self._run_restores(plans, manager.restore_volumes)

    async def _run_restores(self, plans, restore) -> int:
        options = self._restore_options()
        if self.safety.dry_run:
            for plan in plans:
                self.echo(plan.describe(options))
            return 0
        progress = ProgressPrinter()
        try:
            results = await restore(plans, options, progress)
        finally:
            progress.finish()
        for plan, result in zip(plans, results):
            self.echo(f"{plan.snapshot.type} {plan.target_name}: {result}")
        return 0

    async def _restore_all(self) -> int:
        args = self.args
        manager = await self.manager()
        plan = await manager.plan_restore_all(args.project, _timestamp(args.version))
        options = self._restore_options()
        self._print_config_plan(plan.config)
        self._print_restore_plans(plan.volumes + plan.instances, options)
        if self.safety.dry_run:
            return 0
        if not self.confirm("Proceed with restore?"):
            return 0
        progress = ProgressPrinter()
        try:
            await manager.restore_all(plan, options, apply_config=args.apply_config, force=self.safety.force, progress=progress)
        finally:
            progress.finish()
        self.echo(f"Restored {len(plan.volumes)} volume(s) and {len(plan.instances)} instance(s)")
        return 0

    async def cmd_prune(self) -> int:
        args = self.args
        kinds = _kinds(args.kind)
        keep = self.config.backup.keep if args.keep is None else args.keep
        if keep <= 0:
            raise ConfigurationError(f"--keep must be > 0, got {keep}")
        manager = await self.manager(with_host=False)
        plan = await manager.plan_prune(kinds, keep, _timestamp(args.version))
        self.stdout.write(render_table(PRUNE_COLUMNS, plan.rows()))
        if self.safety.dry_run or not plan.candidates:
            return 0
        if not self.confirm(f"Delete {len(plan.candidates)} snapshots?"):
            return 0
        deleted = await manager.prune(plan, reclaim=not args.no_reclaim)
        self.echo(f"Deleted {deleted} snapshots")
        return 0

    async def cmd_verify(self) -> int:
        kinds = _kinds(self.args.kind)
        manager = await self.manager(with_host=False)
        results = await manager.verify(kinds)
        if self.args.output == "json":
            self.dump_json([r.to_dict() for r in results])
        else:
            rows = [[r.type, r.project, r.pool, r.name, r.fingerprint, r.timestamp, r.status] for r in results]
            self.stdout.write(render_table(VERIFY_COLUMNS, rows))
            for r in results:
                for f in r.files:
                    if f.status == STATUS_OK:
                        continue
                    detail = f"expected={f.expected} actual={f.actual}" if f.status == "mismatch" else (f.error or "")
                    self.echo(f"  {r.timestamp} {f.name}: {f.status} {detail}".rstrip())
        return 0 if all(r.status == STATUS_OK for r in results) else 1


def _target_scheme(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return raw.partition(":")[0].strip().lower()


def _default_host():
    from .host.incus_cli import IncusCLIClient
    return IncusCLIClient()


def main(
    argv: Optional[Sequence[str]] = None,
    host_factory: Optional[Callable[[], Any]] = None,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)
    stderr = stderr or sys.stderr

    try:
        config = IncusBackupConfig.from_env()
    except ValueError as e:
        stderr.write(f"Error: invalid configuration: {e}\n")
        return 1
    for warning in validate_config(config, _target_scheme(getattr(args, "target", None))):
        logger.warning(warning)

    app = App(args, config, host_factory or _default_host, stdin or sys.stdin, stdout or sys.stdout)
    try:
        return asyncio.run(app.run())
    except BackupError as e:
        stderr.write(f"Error: {e}\n")
        return 1
    except KeyboardInterrupt:
        stderr.write("Interrupted\n")
        return 130


if __name__ == "__main__":
    sys.exit(main())

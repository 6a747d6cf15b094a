"""Restore policy shared by the instance and volume exporters."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..._identity import LogicalSnapshot
from ..._utils import call_maybe_async, logger
from ...errors import HostConflictError, MissingPartError

RESTORED = "restored"
SKIPPED = "skipped"

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


@dataclass
class RestoreOptions:
    """How to treat a restore target that already exists on the host.

    With neither ``replace`` nor ``skip_existing`` the ``confirm`` callback
    is asked; without a callback the restore fails.
    """
    replace: bool = False
    skip_existing: bool = False
    confirm: Optional[ConfirmCallback] = None

    def __post_init__(self):
        if self.replace and self.skip_existing:
            raise ValueError("replace and skip_existing are mutually exclusive")


@dataclass
class RestorePlan:
    """Resolved restore: which stored version goes where."""
    snapshot: LogicalSnapshot
    project: str
    target_name: str
    exists: bool
    pool: str = ""

    def action(self, options: RestoreOptions) -> str:
        if not self.exists:
            return "create"
        if options.skip_existing:
            return "skip"
        if options.replace:
            return "replace existing"
        return "error (exists)"

    def describe(self, options: RestoreOptions) -> str:
        where = f"{self.project}/{self.pool}" if self.pool else self.project
        return (
            f"Would restore {self.snapshot.type} {self.target_name} in {where} "
            f"from {self.snapshot.timestamp}: {self.action(options)}"
        )


async def should_replace(plan: RestorePlan, options: RestoreOptions) -> bool:
    """Decide whether an existing target is replaced.

    Returns:
        True to stop/delete and re-import, False to leave it alone

    Raises:
        HostConflictError: Target exists and no policy or prompt allows replacing
    """
    if options.skip_existing:
        logger.info(f"Skipping existing {plan.snapshot.type} {plan.project}/{plan.target_name}")
        return False
    if options.replace:
        return True
    if options.confirm is None:
        raise HostConflictError(
            f"{plan.snapshot.type} {plan.target_name!r} already exists in project {plan.project}; "
            "use --replace or --skip-existing"
        )
    question = f"{plan.snapshot.type.capitalize()} {plan.target_name} already exists in project {plan.project}. Replace it?"
    if await call_maybe_async(options.confirm, question):
        return True
    logger.info(f"Not replacing {plan.snapshot.type} {plan.project}/{plan.target_name}")
    return False


def require_part(snapshot: LogicalSnapshot, part: str) -> None:
    """Raise MissingPartError unless ``snapshot`` holds ``part``."""
    if part not in snapshot.parts:
        raise MissingPartError(part, snapshot.key.describe(), snapshot.timestamp)


async def close_stream(stream: Any) -> None:
    """Close a host export stream, sync or async."""
    close = getattr(stream, "close", None)
    if close is None:
        return
    await call_maybe_async(close)

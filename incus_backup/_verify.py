"""Integrity verification against stored checksums.txt files."""

from typing import List, Sequence

from ._identity import CHECKSUMS_FILE, PART_CHECKSUMS, LogicalSnapshot, ResourceKind
from ._transfer import root_cause
from ._utils import logger
from .backup.models import (
    STATUS_ERROR,
    STATUS_MISMATCH,
    STATUS_MISSING,
    STATUS_OK,
    VerifyFileResult,
    VerifyResult,
)
from .backup.utils import parse_checksums
from .errors import PartNotFoundError, ResticNotFoundError

VERIFY_COLUMNS = ("TYPE", "PROJECT", "POOL", "NAME", "FINGERPRINT", "TIMESTAMP", "STATUS")


def _is_missing(error: BaseException) -> bool:
    return isinstance(root_cause(error), (PartNotFoundError, ResticNotFoundError))


def overall_status(files: Sequence[VerifyFileResult]) -> str:
    statuses = {f.status for f in files}
    if STATUS_ERROR in statuses or STATUS_MISSING in statuses:
        return STATUS_ERROR
    if STATUS_MISMATCH in statuses:
        return STATUS_MISMATCH
    return STATUS_OK


def _result(snapshot: LogicalSnapshot, status: str, files: List[VerifyFileResult]) -> VerifyResult:
    key = snapshot.key
    return VerifyResult(
        type=snapshot.type,
        project=key.project,
        pool=key.pool,
        name=key.name,
        fingerprint=key.fingerprint,
        timestamp=snapshot.timestamp,
        status=status,
        path=snapshot.locator,
        files=files,
    )


async def verify_snapshot(backend, snapshot: LogicalSnapshot) -> VerifyResult:
    """Re-hash every file listed in a snapshot's checksums.txt.

    Malformed lines and per-file failures are recorded and verification
    continues with the next line.
    """
    checksums_ref = snapshot.parts.get(PART_CHECKSUMS)
    if checksums_ref is None:
        files = [VerifyFileResult(name=CHECKSUMS_FILE, status=STATUS_MISSING)]
        return _result(snapshot, STATUS_ERROR, files)

    try:
        data = await backend.read_part_bytes(checksums_ref)
    except Exception as e:
        status = STATUS_MISSING if _is_missing(e) else STATUS_ERROR
        logger.warning(f"Cannot read {CHECKSUMS_FILE} of {snapshot.key.describe()} @ {snapshot.timestamp}: {e}")
        files = [VerifyFileResult(name=CHECKSUMS_FILE, status=status, error=str(e))]
        return _result(snapshot, STATUS_ERROR, files)

    files: List[VerifyFileResult] = []
    for entry in parse_checksums(data):
        if not entry.valid:
            files.append(VerifyFileResult(name=entry.name, status=STATUS_ERROR, error=entry.error))
            continue
        ref = snapshot.part_for_file(entry.name)
        if ref is None:
            files.append(VerifyFileResult(name=entry.name, status=STATUS_MISSING, expected=entry.hash))
            continue
        try:
            actual = (await backend.hash_part(ref)).lower()
        except Exception as e:
            status = STATUS_MISSING if _is_missing(e) else STATUS_ERROR
            files.append(VerifyFileResult(name=entry.name, status=status, expected=entry.hash, error=str(e)))
            continue
        if actual == entry.hash:
            files.append(VerifyFileResult(name=entry.name, status=STATUS_OK, expected=entry.hash, actual=actual))
        else:
            files.append(VerifyFileResult(name=entry.name, status=STATUS_MISMATCH, expected=entry.hash, actual=actual))

    status = overall_status(files)
    if status != STATUS_OK:
        logger.warning(f"Verify {snapshot.key.describe()} @ {snapshot.timestamp}: {status}")
    return _result(snapshot, status, files)


async def verify_backend(backend, kinds: Sequence[ResourceKind]) -> List[VerifyResult]:
    """Verify every stored snapshot of ``kinds``, sorted in list order."""
    results = []
    for kind in kinds:
        for snapshot in await backend.snapshots(kind):
            results.append(await verify_snapshot(backend, snapshot))
    results.sort(key=lambda r: (r.type, r.project, r.pool, r.name, r.fingerprint, r.timestamp))
    logger.info(f"Verified {len(results)} snapshot(s)")
    return results

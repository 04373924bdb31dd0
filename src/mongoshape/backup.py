"""Collection backups through mongodump, with retention."""

from __future__ import annotations

import asyncio
import datetime
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

MONGODUMP = "mongodump"


def backup_path(backup_dir: str | Path, database: str, collection: str) -> Path:
    """Directory for a new backup, named after the current UTC time."""
    stamp = datetime.datetime.now(datetime.timezone.utc).isoformat().replace(":", "-")
    return Path(backup_dir) / database / collection / stamp


def mongodump_command(
    uri: str, database: str, collection: str, out: Path, *, compressed: bool = False
) -> list[str]:
    cmd = [
        MONGODUMP,
        f"--uri={uri}",
        f"--db={database}",
        f"--collection={collection}",
        f"--out={out}",
    ]
    if compressed:
        cmd.append("--gzip")
    return cmd


async def backup_collection(
    uri: str,
    database: str,
    collection: str,
    backup_dir: str | Path,
    *,
    max_backups: int = 10,
    compressed: bool = False,
) -> bool:
    """Dump one collection, then prune its oldest backups beyond ``max_backups``.

    Failures are logged and reported as False rather than raised.
    """
    out = backup_path(backup_dir, database, collection)
    out.mkdir(parents=True, exist_ok=True)
    cmd = mongodump_command(uri, database, collection, out, compressed=compressed)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as e:
        logger.error("Backup of '%s' could not start %s: %s", collection, MONGODUMP, e)
        return False

    if process.returncode != 0:
        logger.error(
            "Backup of '%s' failed (exit %s): %s",
            collection,
            process.returncode,
            stderr.decode(errors="replace").strip(),
        )
        return False

    logger.info("Backed up collection '%s' to %s", collection, out)
    prune_backups(out.parent, max_backups)
    return True


def prune_backups(directory: str | Path, max_backups: int) -> int:
    """Delete the oldest entries (by mtime) so at most ``max_backups`` remain."""
    directory = Path(directory)
    if not directory.is_dir():
        logger.error("Backup directory does not exist: %s", directory)
        return 0

    entries = sorted(directory.iterdir(), key=lambda p: p.stat().st_mtime)
    logger.debug("Found %d backups in %s", len(entries), directory)
    stale = entries[: max(0, len(entries) - max_backups)]
    for entry in stale:
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        logger.debug("Deleted old backup %s", entry)
    if stale:
        logger.info("Deleted %d old backups from %s", len(stale), directory)
    return len(stale)

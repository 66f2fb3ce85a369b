"""Atomic file replacement.

Every file geoallow owns (stored prefix lists, the known-good snapshot,
the country registry) is replaced wholesale: written to a temp file in the
same directory, fsynced, then renamed over the target. A crash mid-write
leaves the previous file intact.
"""

import os
import secrets
from pathlib import Path


DEFAULT_FILE_PERMS = 0o644


def _temp_sibling(path: Path) -> Path:
    # Same directory as the target so os.replace() never crosses filesystems
    return path.with_name(f".{path.name}.{secrets.token_hex(6)}.part")


def write_text_atomic(
    path: Path,
    content: str,
    permissions: int = DEFAULT_FILE_PERMS,
) -> None:
    """Replace a text file atomically.

    The new file gets exactly ``permissions`` regardless of umask. On any
    error the temp file is removed and the exception propagates.
    """
    path = Path(path)
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    staging = _temp_sibling(path)

    descriptor = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_EXCL, permissions)
    try:
        os.fchmod(descriptor, permissions)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise

"""Atomic file writes for Goldfish.

Writes go to a temp file in the target's directory and are renamed over the
target. The rename is the only point at which the new content becomes
visible, so readers see either the old or the new file, never a partial one.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
- Temp files are cleaned up on failure
"""

import logging
import os
import tempfile
from pathlib import Path

from goldfish.errors import Err, GoldfishError, Ok, Result

logger = logging.getLogger(__name__)


def _write_atomically(path: Path, content: str, mode: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    # Temp file must share the directory for rename to be atomic
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.stem}_",
        suffix=f"{path.suffix}.tmp",
    )

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        _cleanup_temp(temp_path)
        raise

    logger.debug(f"Atomic write complete: {path}")
    return path


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, GoldfishError]:
    """Atomically write text content to a file.

    Args:
        path: Target file path
        content: Text content to write
        mode: File permissions (default 0o600 - owner read/write only)

    Returns:
        Ok(path) on success, Err(GoldfishError) on failure
    """
    path = Path(path)
    try:
        return Ok(_write_atomically(path, content, mode))

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            GoldfishError(
                code="ATOMIC_PERMISSION_DENIED",
                message=f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            GoldfishError(
                code="ATOMIC_WRITE_FAILED",
                message=f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_or_raise(path: Path, content: str, mode: int = 0o600) -> Path:
    """``atomic_write_text`` for the write path: the original OSError propagates."""
    return _write_atomically(Path(path), content, mode)


def _cleanup_temp(temp_path: str | None) -> None:
    """Clean up temporary file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Temp file may already be gone
        pass

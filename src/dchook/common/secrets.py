"""Loading the shared webhook secret from disk."""

from __future__ import annotations

import os
import stat
from pathlib import Path

ALLOWED_SECRET_MODES = (0o600, 0o400)


class SecretFileError(RuntimeError):
    """Raised when the secret file is missing, unreadable or too permissive."""


def check_secret_permissions(path: Path) -> None:
    """
    Require a regular file readable only by its owner, or a named pipe.

    Named pipes let the secret come from process substitution or a password
    manager without touching disk. The check is skipped on Windows, where
    POSIX modes are not meaningful.
    """
    if os.name == "nt":
        return
    try:
        mode = path.stat().st_mode
    except OSError as exc:
        raise SecretFileError(f"Failed to stat webhook secret file: {exc}") from exc

    if stat.S_ISREG(mode):
        perm = stat.S_IMODE(mode)
        if perm not in ALLOWED_SECRET_MODES:
            raise SecretFileError(f"Secret file has insecure permissions: {perm:o} (expected 0600 or 0400)")
    elif not stat.S_ISFIFO(mode):
        raise SecretFileError(f"Secret file must be a regular file or named pipe: {path}")


def read_secret(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise SecretFileError(f"Failed to read webhook secret: {exc}") from exc


def load_secret(path: Path, *, check_permissions: bool = True) -> str:
    if check_permissions:
        check_secret_permissions(path)
    return read_secret(path)

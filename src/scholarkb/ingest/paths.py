"""Ingestion path guard (path traversal prevention).

Any path containing a ``../`` or ``..\\`` segment is rejected on every
platform, before the filesystem is touched: a Windows-style traversal is
still refused on POSIX, where the backslash would otherwise be a legal
filename character.
"""

from __future__ import annotations

from pathlib import Path

from scholarkb.errors import PathSecurityError

_TRAVERSAL_SEQUENCES: tuple[str, ...] = ("../", "..\\")


def validate_input_path(path: str | Path) -> Path:
    """Validate a user-supplied ingestion path and return it resolved.

    Args:
        path: Path string (or Path) as given by the caller.

    Returns:
        Absolute, resolved Path.

    Raises:
        PathSecurityError: If the path contains a traversal sequence or a NUL byte.
    """
    raw = str(path)
    if "\x00" in raw:
        raise PathSecurityError(f"Path contains a NUL byte: {raw!r}")
    traversal = any(seq in raw for seq in _TRAVERSAL_SEQUENCES)
    if traversal or raw == ".." or raw.endswith(("/..", "\\..")):
        raise PathSecurityError(
            f"Path traversal is not allowed: '{raw}'\n"
            "  Pass the file's absolute path or a path below the current directory."
        )
    return Path(raw).expanduser().resolve()

"""Process output log files and rotation for proccompose."""

from __future__ import annotations

import gzip
import re
from pathlib import Path

from loguru import logger


def parse_size(size_str: str) -> int:
    """Parse a human-readable size string to bytes.

    Examples:
        "10MB" -> 10485760
        "1GB" -> 1073741824
        "500KB" -> 512000
        "1024" -> 1024

    Args:
        size_str: Size string like "10MB", "1GB", "500KB"

    Returns:
        Size in bytes
    """
    size_str = size_str.strip().upper()

    # If it's just a number, return as-is
    if size_str.isdigit():
        return int(size_str)

    # Match number + unit
    match = re.match(r'^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)?$', size_str)
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    number = float(match.group(1))
    unit = match.group(2) or "B"

    multipliers = {
        "B": 1,
        "KB": 1024,
        "MB": 1024 * 1024,
        "GB": 1024 * 1024 * 1024,
        "TB": 1024 * 1024 * 1024 * 1024,
    }

    return int(number * multipliers[unit])


def get_log_files(base_path: Path) -> list[tuple[Path, int]]:
    """Get all rotated log files for a base path, sorted by index.

    Example: web.log.1, web.log.2.gz -> [(web.log.1, 1), (web.log.2.gz, 2)]
    """
    files = []
    prefix = f"{base_path.name}."

    for f in base_path.parent.glob(f"{base_path.name}.*"):
        rest = f.name[len(prefix):]
        if rest.endswith(".gz"):
            rest = rest[:-3]
        if rest.isdigit():
            files.append((f, int(rest)))

    files.sort(key=lambda x: x[1])
    return files


def rotate_log(log_path: Path, max_files: int = 5, compress: bool = False) -> bool:
    """Rotate a log file.

    Renames log files in sequence (web.log -> web.log.1 -> web.log.2 ...),
    keeping at most ``max_files`` rotated files. With ``compress`` the files
    from index 2 on are gzipped.

    Returns:
        True if rotation was performed
    """
    if not log_path.exists():
        return False

    if max_files <= 0:
        log_path.unlink()
        return True

    rotated = get_log_files(log_path)

    # Remove oldest files if we have too many
    while len(rotated) >= max_files:
        oldest_path, _ = rotated.pop()
        logger.debug(f"Removing old log: {oldest_path}")
        oldest_path.unlink()

    # Work backwards to avoid overwriting
    for path, idx in reversed(rotated):
        new_idx = idx + 1
        if path.suffix == ".gz":
            path.rename(log_path.with_name(f"{log_path.name}.{new_idx}.gz"))
        elif compress:
            _compress_file(path, log_path.with_name(f"{log_path.name}.{new_idx}.gz"))
            path.unlink()
        else:
            path.rename(log_path.with_name(f"{log_path.name}.{new_idx}"))

    log_path.rename(log_path.with_name(f"{log_path.name}.1"))
    return True


def _compress_file(src: Path, dst: Path) -> None:
    """Compress a file with gzip."""
    with open(src, "rb") as f_in:
        with gzip.open(dst, "wb") as f_out:
            f_out.writelines(f_in)


def check_and_rotate(log_path: Path, max_size: str, max_files: int, compress: bool = False) -> bool:
    """Rotate ``log_path`` if it reached ``max_size``.

    Returns:
        True if rotation was performed
    """
    if not log_path.exists():
        return False

    max_bytes = parse_size(max_size)
    current_size = log_path.stat().st_size

    if current_size >= max_bytes:
        logger.info(
            f"Log rotation triggered for {log_path.name} "
            f"({current_size / 1024 / 1024:.1f}MB >= {max_size})"
        )
        return rotate_log(log_path, max_files=max_files, compress=compress)

    return False

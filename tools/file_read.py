"""Read files for @references and list directories for autocomplete."""

import os
from pathlib import Path


MAX_FILE_BYTES = 10 * 1024 * 1024

# Directories hidden from autocomplete along with dotfiles
IGNORED_DIRS = {"node_modules", "__pycache__"}


def read_file(path: str) -> dict:
    """Read a text file.

    Args:
        path: Absolute or relative file path, "~" expanded.

    Returns:
        dict with ok, path, exists, content, size, encoding, or ok=False with error.
        exists is False only when nothing is at the path.
    """
    p = Path(path).expanduser()

    if not p.exists():
        return {"ok": False, "path": path, "exists": False, "size": 0,
                "error": f"File not found: {path}"}

    if not p.is_file():
        return {"ok": False, "path": path, "exists": True, "size": 0,
                "error": f"Not a file: {path}"}

    try:
        size = p.stat().st_size
        if size > MAX_FILE_BYTES:
            return {"ok": False, "path": path, "exists": True, "size": size,
                    "error": f"File too large ({size} bytes, limit {MAX_FILE_BYTES}): {path}"}

        # Binary detection: read first 8KB and check for null bytes
        raw = p.read_bytes()
    except PermissionError:
        return {"ok": False, "path": path, "exists": True, "size": 0,
                "error": f"Permission denied: {path}"}
    except OSError as e:
        return {"ok": False, "path": path, "exists": True, "size": 0,
                "error": f"Cannot read {path}: {e}"}

    if b"\x00" in raw[:8192]:
        return {"ok": False, "path": path, "exists": True, "size": size,
                "error": f"Binary file detected ({size} bytes): {path}"}

    # Try encodings in order
    content = None
    detected_encoding = None
    for enc in ("utf-8", "utf-8-sig", "latin-1"):
        try:
            content = raw.decode(enc)
            detected_encoding = enc
            break
        except UnicodeDecodeError:
            continue

    if content is None:
        return {"ok": False, "path": path, "exists": True, "size": size,
                "error": f"Could not decode file: {path}"}

    if detected_encoding == "utf-8" and content.startswith("\ufeff"):
        content = content[1:]

    return {
        "ok": True,
        "path": path,
        "exists": True,
        "content": content,
        "size": size,
        "encoding": detected_encoding,
    }


def list_dir(directory: str = ".") -> list[str]:
    """Entry names in directory, sorted, excluding dotfiles and dependency caches.

    Directories get a trailing "/". Returns [] if the directory can't be read.
    """
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return []

    names = []
    for entry in entries:
        if entry.name.startswith(".") or entry.name in IGNORED_DIRS:
            continue
        try:
            is_dir = entry.is_dir()
        except OSError:
            is_dir = False
        names.append(entry.name + "/" if is_dir else entry.name)
    names.sort(key=str.lower)
    return names

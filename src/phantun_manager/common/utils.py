"""Utility functions for the Phantun manager."""

import hashlib
import os
import shutil
from pathlib import Path

COMMON_BINARY_DIRS = ("/usr/local/bin", "/usr/bin", "/opt/phantun")


def find_binary(name: str, env_var: str | None = None) -> str | None:
    """Locate an executable by name.

    Lookup order is PATH, then the environment variable override, then a few
    common install directories.

    Args:
        name: Executable name (e.g. ``phantun_client``)
        env_var: Environment variable that may hold an explicit path

    Returns:
        Absolute path to the executable, or None if it cannot be found
    """
    binary_path = shutil.which(name)
    if binary_path:
        return binary_path

    if env_var:
        env_path = os.environ.get(env_var)
        if env_path and Path(env_path).is_file() and os.access(env_path, os.X_OK):
            return env_path

    for directory in COMMON_BINARY_DIRS:
        candidate = Path(directory) / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    return None


def short_file_hash(path: str, length: int = 8) -> str:
    """Return a short MD5 digest of a file, used to identify binary builds.

    Args:
        path: File to hash
        length: Number of hex characters to keep

    Returns:
        Hex digest prefix, or ``"readable-error"`` if the file cannot be read
    """
    digest = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError:
        return "readable-error"
    return digest.hexdigest()[:length]

"""File helpers -- home directory resolution and directory listing for pickers."""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from tools.shell_executor import resolve_working_directory

logger = logging.getLogger(__name__)


@dataclass
class DirEntry:
    name: str
    path: str
    is_dir: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_home_dir() -> str:
    home = os.path.expanduser("~")
    if not home or home == "~":
        raise RuntimeError("Could not find home directory")
    return home


def list_directory(path: str) -> List[DirEntry]:
    """
    List ``path`` without hidden entries: directories first, then files,
    each group ordered by case-insensitive name.

    Raises OSError (FileNotFoundError, NotADirectoryError, PermissionError)
    when the directory cannot be read.
    """
    resolved = resolve_working_directory(path)
    entries: List[DirEntry] = []
    with os.scandir(resolved) as it:
        for entry in it:
            if entry.name.startswith("."):
                continue
            try:
                is_dir = entry.is_dir()
            except OSError as e:
                logger.debug("Could not stat %s: %s", entry.path, e)
                is_dir = False
            entries.append(DirEntry(name=entry.name, path=entry.path, is_dir=is_dir))
    entries.sort(key=lambda e: (not e.is_dir, e.name.lower()))
    return entries

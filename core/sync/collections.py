"""
Directory to remote collection mapping.
"""

from pathlib import PurePosixPath, Path
from typing import Mapping, Optional, Union


def map_collection(
    relative_path: Union[str, PurePosixPath, Path],
    mapping: Mapping[str, str],
    default: str
) -> str:
    """
    Map a file's path relative to the sync root onto a collection name.

    The first directory segment is looked up in ``mapping``; unmapped
    segments become their title-cased form and root-level files land in
    ``default``.
    """
    parts = PurePosixPath(Path(relative_path).as_posix()).parts
    if len(parts) <= 1:
        return default

    segment = parts[0]
    if segment in mapping:
        return mapping[segment]

    lowered = segment.lower()
    for key, name in mapping.items():
        if key.lower() == lowered:
            return name

    return segment.replace('-', ' ').replace('_', ' ').strip().title() or default


def resolve_collection(
    relative_path: Union[str, PurePosixPath, Path],
    mapping: Mapping[str, str],
    default: str,
    override: Optional[str] = None
) -> str:
    """Front matter ``collection`` wins over the directory mapping"""
    if override and str(override).strip():
        return str(override).strip()
    return map_collection(relative_path, mapping, default)

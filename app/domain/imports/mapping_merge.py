"""
Detect and resolve fields dropped when a saved mapping is replaced.

A field is *dropped* when the old mapping points it at a header and the new
mapping leaves it out or blank. Callers must pick a ``MergeStrategy`` before
such a change is written; ``resolve_mapping`` refuses to guess.
"""
from enum import Enum
from typing import Dict, List, Optional

from app.domain.imports.errors import MappingConflictError


class MergeStrategy(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


def _has_value(value: Optional[str]) -> bool:
    return value is not None and str(value).strip() != ""


def diff_mappings(old: Dict[str, str], new: Dict[str, str]) -> List[str]:
    """Keys of ``old`` with a non-empty value that are missing or empty in ``new``."""
    return [key for key, value in old.items() if _has_value(value) and not _has_value(new.get(key))]


def merge_mappings(old: Dict[str, str], new: Dict[str, str]) -> Dict[str, str]:
    merged = {key: value for key, value in old.items() if _has_value(value)}
    for key, value in new.items():
        if _has_value(value):
            merged[key] = value
    return merged


def resolve_mapping(
    old: Dict[str, str],
    new: Dict[str, str],
    strategy: Optional[MergeStrategy] = None,
) -> Dict[str, str]:
    """
    Return the mapping that should be persisted.

    Raises:
        MappingConflictError: fields would be dropped and no strategy was chosen.
    """
    dropped = diff_mappings(old or {}, new or {})
    if not dropped:
        return dict(new or {})
    if strategy is None:
        raise MappingConflictError(dropped)
    if MergeStrategy(strategy) is MergeStrategy.MERGE:
        return merge_mappings(old, new)
    return dict(new)

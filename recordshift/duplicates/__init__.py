from recordshift.duplicates.detection import GroupAccumulator, apply_keep_strategy, detect_duplicate_groups
from recordshift.duplicates.matcher import DuplicateMatcher
from recordshift.duplicates.normalize import build_duplicate_key, canonical_number, normalize_match_value
from recordshift.duplicates.types import (
    CacheStats,
    DuplicateCheckResult,
    DuplicateGroup,
    DuplicateItem,
    KeepStrategy,
)

__all__ = [
    "CacheStats",
    "DuplicateCheckResult",
    "DuplicateGroup",
    "DuplicateItem",
    "DuplicateMatcher",
    "GroupAccumulator",
    "KeepStrategy",
    "apply_keep_strategy",
    "build_duplicate_key",
    "canonical_number",
    "detect_duplicate_groups",
    "normalize_match_value",
]

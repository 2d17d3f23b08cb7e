"""Tag taxonomy for Convotag."""

from convotag.tagging.taxonomy import (
    PROBLEM_TYPES,
    SYSTEM_TAGS,
    is_problem_type,
    normalize_tag_name,
    seed_system_tags,
)

__all__ = [
    "PROBLEM_TYPES",
    "SYSTEM_TAGS",
    "is_problem_type",
    "normalize_tag_name",
    "seed_system_tags",
]

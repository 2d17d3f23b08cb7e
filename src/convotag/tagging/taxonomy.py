"""
System tag taxonomy.

The seed set of tags every installation starts with. All of them are
system tags and cannot be deleted.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from convotag.db.repositories.tag import TagRepository
from convotag.models.db import TagCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemTag:
    name: str
    display_name: str
    category: str
    color: str
    description: Optional[str] = None


PROBLEM_TYPES = [
    "learning_strategy",
    "memory_retention",
    "exam_preparation",
    "concept_understanding",
    "knowledge_application",
    "study_habits",
    "personal_growth",
    "learning_difficulties",
]

SYSTEM_TAGS = [
    # Problem types
    SystemTag("learning_strategy", "Learning Strategy", TagCategory.PROBLEM_TYPE.value, "#FF6B6B",
              "Planning how to learn: methods, schedules and paths"),
    SystemTag("memory_retention", "Memory Retention", TagCategory.PROBLEM_TYPE.value, "#4ECDC4",
              "Remembering material and fighting forgetting"),
    SystemTag("exam_preparation", "Exam Preparation", TagCategory.PROBLEM_TYPE.value, "#45B7D1",
              "Preparing for tests and exams"),
    SystemTag("concept_understanding", "Concept Understanding", TagCategory.PROBLEM_TYPE.value, "#96CEB4",
              "Grasping concepts, principles and definitions"),
    SystemTag("knowledge_application", "Knowledge Application", TagCategory.PROBLEM_TYPE.value, "#FFEAA7",
              "Applying knowledge through practice and projects"),
    SystemTag("study_habits", "Study Habits", TagCategory.PROBLEM_TYPE.value, "#DDA0DD",
              "Focus, time management and discipline"),
    SystemTag("personal_growth", "Personal Growth", TagCategory.PROBLEM_TYPE.value, "#FFB6C1",
              "Goals, values and self-improvement"),
    SystemTag("learning_difficulties", "Learning Difficulties", TagCategory.PROBLEM_TYPE.value, "#87CEEB",
              "Obstacles, confusion and sticking points"),
    # Complexity
    SystemTag("complexity_basic", "Basic", TagCategory.COMPLEXITY.value, "#E8F5E8"),
    SystemTag("complexity_intermediate", "Intermediate", TagCategory.COMPLEXITY.value, "#FFF8DC"),
    SystemTag("complexity_advanced", "Advanced", TagCategory.COMPLEXITY.value, "#FFE4E1"),
    # Sentiment
    SystemTag("sentiment_positive", "Positive", TagCategory.SENTIMENT.value, "#90EE90"),
    SystemTag("sentiment_neutral", "Neutral", TagCategory.SENTIMENT.value, "#F0F8FF"),
    SystemTag("sentiment_concerned", "Concerned", TagCategory.SENTIMENT.value, "#FFE4B5"),
    # Topics
    SystemTag("topic_education", "Education", TagCategory.TOPIC.value, "#FF7F50"),
    SystemTag("topic_learning_science", "Learning Science", TagCategory.TOPIC.value, "#6A5ACD"),
    SystemTag("topic_skill_development", "Skill Development", TagCategory.TOPIC.value, "#20B2AA"),
    SystemTag("topic_knowledge_management", "Knowledge Management", TagCategory.TOPIC.value, "#F4A460"),
]

_NAME_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_tag_name(name: str) -> str:
    """Canonical tag name: trimmed, lowercase, words joined by underscores."""
    return _NAME_SEPARATORS.sub("_", name.strip().lower())


def is_problem_type(name: str) -> bool:
    return name in PROBLEM_TYPES


def seed_system_tags(session: Session) -> int:
    """
    Create any missing system tags. Safe to run repeatedly.

    Args:
        session: Database session (caller commits)

    Returns:
        Number of tags that did not exist before
    """
    repo = TagRepository(session)
    existing = repo.get_by_names(tag.name for tag in SYSTEM_TAGS)

    created = 0
    for tag in SYSTEM_TAGS:
        if tag.name in existing:
            continue
        repo.get_or_create(
            tag.name,
            display_name=tag.display_name,
            category=tag.category,
            color=tag.color,
            description=tag.description,
            is_system=True,
        )
        created += 1

    if created:
        logger.info(f"Seeded {created} system tags")
    return created

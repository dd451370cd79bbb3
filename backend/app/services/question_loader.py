"""Service to load security question templates from YAML into the database."""
import logging
from pathlib import Path

import yaml
from sqlalchemy.orm import Session

from app.models.enrollment import SecurityQuestionTemplate

logger = logging.getLogger(__name__)


def load_security_questions(db: Session, yaml_path: Path) -> list[SecurityQuestionTemplate]:
    """Upsert every question in the file by slug.

    Returns the loaded/updated templates. A missing or unreadable file loads
    nothing and leaves existing rows alone.
    """
    if not yaml_path.exists():
        logger.warning(f"Security questions file not found: {yaml_path}")
        return []

    try:
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read security questions from {yaml_path}: {e}")
        return []

    loaded = []
    for entry in data.get("questions", []):
        question = _upsert_question(db, entry)
        if question:
            loaded.append(question)

    db.commit()
    logger.info(f"Loaded {len(loaded)} security questions")
    return loaded


def _upsert_question(db: Session, entry: dict) -> SecurityQuestionTemplate | None:
    slug = entry.get("slug")
    text = entry.get("text")
    if not slug or not text:
        logger.warning(f"Security question missing slug or text: {entry}")
        return None

    active = 1 if entry.get("active", True) else 0
    existing = db.query(SecurityQuestionTemplate).filter(SecurityQuestionTemplate.slug == slug).first()
    if existing:
        existing.question_text = text
        existing.category = entry.get("category", existing.category)
        existing.active = active
        logger.debug(f"Updated security question: {slug}")
        return existing

    question = SecurityQuestionTemplate(
        slug=slug,
        question_text=text,
        category=entry.get("category", "general"),
        active=active,
    )
    db.add(question)
    logger.debug(f"Created security question: {slug}")
    return question

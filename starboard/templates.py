from typing import Optional

import structlog
from sqlmodel import Session, select

from .errors import NotFoundError, ValidationError
from .members import get_guardian, get_member
from .models import ScheduleType, TaskCategory, TaskTemplate

log = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("title", "category", "default_stars", "schedule_type", "time_window_minutes")


def _validate(template: TaskTemplate):
    if not template.title or not template.title.strip():
        raise ValidationError("Title is required")
    if template.default_stars is None or template.default_stars < 1:
        raise ValidationError("Stars must be a positive whole number")
    if template.schedule_type == ScheduleType.time_sensitive:
        if not template.time_window_minutes or template.time_window_minutes < 1:
            raise ValidationError("Time-sensitive tasks need a time window in minutes")
    elif template.time_window_minutes is not None:
        raise ValidationError("Only time-sensitive tasks take a time window")


def create_template(
    session: Session,
    family_id: int,
    created_by_id: int,
    title: str,
    default_stars: int,
    category: TaskCategory = TaskCategory.personal,
    schedule_type: ScheduleType = ScheduleType.one_time,
    time_window_minutes: Optional[int] = None,
) -> TaskTemplate:
    get_guardian(session, family_id, created_by_id)
    template = TaskTemplate(
        family_id=family_id,
        title=title.strip(),
        category=category,
        default_stars=default_stars,
        schedule_type=schedule_type,
        time_window_minutes=time_window_minutes,
        created_by_member_id=created_by_id,
    )
    _validate(template)
    session.add(template)
    session.commit()
    session.refresh(template)
    log.info(
        "template_created",
        template_id=template.id,
        schedule_type=template.schedule_type.value,
        stars=template.default_stars,
    )
    return template


def get_template(session: Session, family_id: int, template_id: int) -> TaskTemplate:
    template = session.get(TaskTemplate, template_id)
    if not template or template.family_id != family_id:
        raise NotFoundError("Task template not found", entity_id=template_id)
    return template


def update_template(session: Session, family_id: int, template_id: int, updated_by_id: int, **changes) -> TaskTemplate:
    get_guardian(session, family_id, updated_by_id)
    template = get_template(session, family_id, template_id)
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot edit {', '.join(sorted(unknown))}")
    for field, value in changes.items():
        setattr(template, field, value.strip() if field == "title" else value)
    if template.schedule_type != ScheduleType.time_sensitive and "time_window_minutes" not in changes:
        template.time_window_minutes = None
    _validate(template)
    session.add(template)
    session.commit()
    session.refresh(template)
    log.info("template_updated", template_id=template_id, fields=sorted(changes))
    return template


def toggle_template(session: Session, family_id: int, template_id: int, member_id: int) -> TaskTemplate:
    """Flip visibility. Any family member may do this."""
    get_member(session, family_id, member_id)
    template = get_template(session, family_id, template_id)
    if template.archived:
        raise ValidationError("Archived templates cannot be enabled", entity_id=template_id)
    template.enabled = not template.enabled
    session.add(template)
    session.commit()
    session.refresh(template)
    log.info("template_toggled", template_id=template_id, enabled=template.enabled)
    return template


def archive_template(session: Session, family_id: int, template_id: int, archived_by_id: int) -> TaskTemplate:
    get_guardian(session, family_id, archived_by_id)
    template = get_template(session, family_id, template_id)
    template.archived = True
    template.enabled = False
    session.add(template)
    session.commit()
    session.refresh(template)
    log.info("template_archived", template_id=template_id)
    return template


def list_templates(session: Session, family_id: int, include_archived: bool = False, enabled_only: bool = False):
    statement = select(TaskTemplate).where(TaskTemplate.family_id == family_id)
    if not include_archived:
        statement = statement.where(TaskTemplate.archived == False)  # noqa: E712
    if enabled_only:
        statement = statement.where(TaskTemplate.enabled == True)  # noqa: E712
    return session.exec(statement.order_by(TaskTemplate.id)).all()


def ensure_assignable(template: TaskTemplate):
    if template.archived:
        raise ValidationError("Task template is archived", entity_id=template.id)
    if not template.enabled:
        raise ValidationError("Task template is disabled", entity_id=template.id)


STARTER_TEMPLATES = [
    {"title": "Make your bed", "category": TaskCategory.cleaning, "default_stars": 1,
     "schedule_type": ScheduleType.recurring_daily},
    {"title": "Tidy up your room", "category": TaskCategory.cleaning, "default_stars": 2},
    {"title": "Set the table", "category": TaskCategory.kitchen, "default_stars": 1},
    {"title": "Wash dishes", "category": TaskCategory.kitchen, "default_stars": 2},
    {"title": "Read for 15 minutes", "category": TaskCategory.learning, "default_stars": 2,
     "schedule_type": ScheduleType.recurring_daily},
    {"title": "Write a thank you note", "category": TaskCategory.kindness, "default_stars": 2},
    {"title": "Pray on time", "category": TaskCategory.prayer, "default_stars": 2,
     "schedule_type": ScheduleType.time_sensitive, "time_window_minutes": 30},
    {"title": "Water plants", "category": TaskCategory.outdoor, "default_stars": 1},
    {"title": "Brush teeth evening", "category": TaskCategory.personal, "default_stars": 1,
     "schedule_type": ScheduleType.recurring_daily},
]


def seed_starter_templates(session: Session, family_id: int, created_by_id: int):
    existing = session.exec(select(TaskTemplate.id).where(TaskTemplate.family_id == family_id)).first()
    if existing is not None:
        return
    for preset in STARTER_TEMPLATES:
        session.add(TaskTemplate(family_id=family_id, created_by_member_id=created_by_id, **preset))
    session.commit()
    log.info("starter_templates_seeded", family_id=family_id, count=len(STARTER_TEMPLATES))

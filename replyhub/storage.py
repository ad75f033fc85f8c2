import logging
from datetime import datetime
from typing import Any, Generator, List, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from replyhub.config import settings
from replyhub.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

# API field name -> ORM attribute name
FIELD_ALIASES = {"metadata": "message_metadata"}


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from replyhub import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the messages table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("messages"):
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _apply_fields(entity: Any, fields: dict) -> None:
    for key, value in fields.items():
        attr = FIELD_ALIASES.get(key, key)
        if not hasattr(type(entity), attr):
            logger.debug(f"Ignoring unknown field '{key}' for {type(entity).__name__}")
            continue
        setattr(entity, attr, value)


def _commit(db: Session, entity: Any, action: str) -> Any:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action} {type(entity).__name__}: {e}")
        raise
    db.refresh(entity)
    return entity


# =============================================================================
# Generic Repository Functions (projects, logs)
# =============================================================================

def create_entity(db: Session, model: type, fields: dict) -> Any:
    """Insert a new row of the given model and return it refreshed."""
    entity = model()
    _apply_fields(entity, fields)
    db.add(entity)
    return _commit(db, entity, "create")


def get_entity(db: Session, model: type, entity_id: str) -> Optional[Any]:
    return db.get(model, entity_id)


def list_entities(db: Session, model: type, criteria: Optional[list] = None) -> List[Any]:
    query = db.query(model)
    for criterion in criteria or []:
        query = query.filter(criterion)
    return query.order_by(model.created_at.desc()).all()


def update_entity(db: Session, model: type, entity_id: str, patch: dict) -> Optional[Any]:
    """Apply patch to the row; None if the id has no match."""
    entity = db.get(model, entity_id)
    if entity is None:
        return None
    _apply_fields(entity, patch)
    return _commit(db, entity, "update")


def delete_entity(db: Session, model: type, entity_id: str) -> Optional[Any]:
    """Delete the row and return it; None if the id has no match."""
    entity = db.get(model, entity_id)
    if entity is None:
        return None
    db.delete(entity)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete {model.__name__} {entity_id}: {e}")
        raise
    return entity


# =============================================================================
# Message Repository Functions
# =============================================================================

def message_criteria(
    project: Optional[str] = None,
    status: Optional[str] = None,
    type: Optional[str] = None,
    from_phone: Optional[str] = None,
    to_phone: Optional[str] = None,
    priority: Optional[str] = None,
    phone: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> list:
    """
    Build the filter clauses for a message query.

    phone matches either side of the conversation (sender OR recipient);
    every other argument is an equality filter. Dates bound created_at
    inclusively.
    """
    from replyhub.models import Message

    criteria = []
    if phone:
        criteria.append(or_(Message.from_phone == phone, Message.to_phone == phone))
    if project:
        criteria.append(Message.project_id == project)
    if status:
        criteria.append(Message.status == status)
    if type:
        criteria.append(Message.type == type)
    if from_phone:
        criteria.append(Message.from_phone == from_phone)
    if to_phone:
        criteria.append(Message.to_phone == to_phone)
    if priority:
        criteria.append(Message.priority == priority)
    if start_date:
        criteria.append(Message.created_at >= start_date)
    if end_date:
        criteria.append(Message.created_at <= end_date)
    return criteria


def find_messages(
    db: Session,
    criteria: list,
    newest_first: bool = True,
    limit: int = 50,
    skip: int = 0,
) -> List[Any]:
    """
    Retrieve messages matching criteria, ordered by creation time.

    Ties on created_at are broken by id so paging stays deterministic.
    A limit of 0 returns every match after skip.
    """
    from replyhub.models import Message

    query = db.query(Message)
    for criterion in criteria:
        query = query.filter(criterion)

    if newest_first:
        query = query.order_by(Message.created_at.desc(), Message.id.desc())
    else:
        query = query.order_by(Message.created_at.asc(), Message.id.asc())

    # limit=0 means no limit
    query = query.offset(skip)
    if limit:
        query = query.limit(limit)
    messages = query.all()
    logger.debug(f"find_messages: {len(messages)} rows (limit={limit}, skip={skip})")
    return messages


def count_messages(db: Session, criteria: list) -> int:
    from replyhub.models import Message

    query = db.query(func.count(Message.id))
    for criterion in criteria:
        query = query.filter(criterion)
    return query.scalar() or 0


def create_message(db: Session, fields: dict) -> Any:
    """
    Persist a new message.

    Raises:
        ValidationError: when a phone number is missing
        SQLAlchemyError: when the write fails (after rollback)
    """
    from replyhub.models import Message

    if not fields.get("from_phone") or not fields.get("to_phone"):
        raise ValidationError("from_phone and to_phone are required")

    logger.info(f"Creating message: from={fields['from_phone']}, to={fields['to_phone']}")
    message = create_entity(db, Message, fields)
    logger.info(f"Message created successfully: {message.id}")
    return message


def get_message_by_id(db: Session, message_id: str) -> Optional[Any]:
    """
    Retrieve a message by its ID.

    Returns:
        Message object if found, None otherwise
    """
    from replyhub.models import Message

    result = db.get(Message, message_id)
    logger.debug(f"Message lookup {message_id}: {'found' if result else 'not found'}")
    return result


def require_message(db: Session, message_id: str) -> Any:
    """Like get_message_by_id, but raises NotFoundError for an unknown id."""
    message = get_message_by_id(db, message_id)
    if message is None:
        raise NotFoundError(f"message {message_id} not found")
    return message


def status_transition_allowed(current: str, new: str) -> bool:
    from replyhub.models import STATUS_RANK, TERMINAL_STATUSES

    if new == current:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return STATUS_RANK.get(new, -1) > STATUS_RANK.get(current, -1)


def update_message(db: Session, message_id: str, patch: dict) -> Any:
    """
    Apply patch to a message; NotFoundError if the id has no match.

    Status only moves forward (pending, sent, delivered, read) or into
    failed/cancelled, which are absorbing. Any other change raises
    ValidationError; re-applying the current status is allowed.
    """
    message = require_message(db, message_id)

    new_status = patch.get("status")
    if new_status and not status_transition_allowed(message.status, new_status):
        raise ValidationError(
            f"message {message_id} is {message.status} and cannot become {new_status}"
        )

    _apply_fields(message, patch)
    updated = _commit(db, message, "update")
    logger.info(f"Message updated: {message_id}, status={updated.status}")
    return updated


def delete_message(db: Session, message_id: str) -> Optional[Any]:
    from replyhub.models import Message

    return delete_entity(db, Message, message_id)


def get_message_stats(db: Session, criteria: Optional[list] = None) -> dict:
    """
    Count messages per status and sum their cost.

    Returns:
        Dictionary with total, one key per status and total_cost
    """
    from replyhub.models import Message, MESSAGE_STATUSES

    criteria = criteria or []

    query = db.query(Message.status, func.count(Message.id), func.coalesce(func.sum(Message.cost), 0.0))
    for criterion in criteria:
        query = query.filter(criterion)
    rows = query.group_by(Message.status).all()

    stats = {status: 0 for status in MESSAGE_STATUSES}
    total = 0
    total_cost = 0.0
    for status, count, cost in rows:
        stats[status] = count
        total += count
        total_cost += float(cost or 0.0)

    stats["total"] = total
    stats["total_cost"] = total_cost
    logger.info(f"Stats computed: {total} messages")
    return stats


def conversation_bounds(db: Session, criteria: list) -> Tuple[Optional[datetime], Optional[datetime], float]:
    """First/last created_at and total cost over the matching messages."""
    from replyhub.models import Message

    query = db.query(
        func.min(Message.created_at),
        func.max(Message.created_at),
        func.coalesce(func.sum(Message.cost), 0.0),
    )
    for criterion in criteria:
        query = query.filter(criterion)
    first, last, cost = query.one()
    return first, last, float(cost or 0.0)

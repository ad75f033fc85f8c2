"""
Conversation history retrieval.

Reads the messages exchanged with a phone number and shapes them either as
a raw page (newest first) or as role-tagged turns (oldest first) ready to be
fed to the language model.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replyhub.errors import Result, ServiceError
from replyhub.storage import conversation_bounds, count_messages, find_messages, message_criteria
from replyhub.utils import clamp_non_negative, parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
DEFAULT_CONVERSATION_LIMIT = 100


@dataclass
class HistoryFilters:
    """
    Filters accepted by the history queries.

    limit/skip may arrive as raw query strings; they are clamped on use.
    """
    project: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    start_date: Optional[Any] = None
    end_date: Optional[Any] = None
    limit: Any = DEFAULT_LIMIT
    skip: Any = 0


@dataclass
class Pagination:
    count: int
    total: int
    limit: int
    skip: int


@dataclass
class PhoneHistory:
    phone_number: str
    messages: List[Any]
    pagination: Pagination
    format_for_ai: bool = False

    def to_dict(self) -> dict:
        from replyhub.schemas import serialize_message

        messages = self.messages
        if not self.format_for_ai:
            messages = [serialize_message(m) for m in messages]
        return {
            "phone_number": self.phone_number,
            "messages": messages,
            "pagination": asdict(self.pagination),
        }


@dataclass
class ConversationStats:
    total_messages: int = 0
    client_messages: int = 0
    system_messages: int = 0
    first_message_at: Optional[Any] = None
    last_message_at: Optional[Any] = None
    total_cost: float = 0.0
    conversation_duration_days: int = 0


@dataclass
class Conversation:
    client_phone: str
    messages: List[dict]
    pagination: Pagination
    stats: ConversationStats = field(default_factory=ConversationStats)

    def to_dict(self) -> dict:
        stats = asdict(self.stats)
        for key in ("first_message_at", "last_message_at"):
            if stats[key] is not None:
                stats[key] = stats[key].isoformat()
        return {
            "client_phone": self.client_phone,
            "messages": self.messages,
            "pagination": asdict(self.pagination),
            "stats": stats,
        }


def to_turn(message: Any, phone_number: str) -> dict:
    """Reduce a stored message to a conversation turn seen from phone_number."""
    role = "user" if message.from_phone == phone_number else "assistant"
    return {"role": role, "content": message.content}


def get_messages_by_phone(
    db: Session,
    phone_number: str,
    filters: Optional[HistoryFilters] = None,
    format_for_ai: bool = False,
) -> Result[PhoneHistory]:
    """
    Messages where phone_number is the sender or the recipient.

    Raw mode returns ORM messages newest first. AI-context mode returns
    turns oldest first so the model reads the conversation in order.
    Never raises: failures come back as Result.failure.
    """
    filters = filters or HistoryFilters()
    limit = clamp_non_negative(filters.limit, DEFAULT_LIMIT)
    skip = clamp_non_negative(filters.skip, 0)

    try:
        criteria = message_criteria(
            phone=phone_number,
            project=filters.project,
            status=filters.status,
            type=filters.type,
            start_date=parse_datetime(filters.start_date),
            end_date=parse_datetime(filters.end_date),
        )
        messages = find_messages(db, criteria, newest_first=not format_for_ai, limit=limit, skip=skip)
        total = count_messages(db, criteria)
    except (ServiceError, SQLAlchemyError) as e:
        logger.error(f"History lookup failed for {phone_number}: {e}")
        if isinstance(e, ServiceError):
            return Result.failure(e)
        return Result.failure(ServiceError(f"history lookup failed: {e}"))

    pagination = Pagination(count=len(messages), total=total, limit=limit, skip=skip)
    if format_for_ai:
        messages = [to_turn(m, phone_number) for m in messages]

    logger.info(f"History for {phone_number}: {pagination.count} of {total} messages (ai={format_for_ai})")
    return Result.success(
        PhoneHistory(
            phone_number=phone_number,
            messages=messages,
            pagination=pagination,
            format_for_ai=format_for_ai,
        )
    )


def get_conversation_history(
    db: Session,
    client_phone: str,
    project: Optional[str] = None,
    start_date: Optional[Any] = None,
    end_date: Optional[Any] = None,
    limit: Any = DEFAULT_CONVERSATION_LIMIT,
    skip: Any = 0,
    include_system_messages: bool = True,
) -> Result[Conversation]:
    """
    Chronological conversation with a client, annotated with direction and stats.

    With include_system_messages=False only the client's own messages are returned.
    """
    from replyhub.models import Message
    from replyhub.schemas import serialize_message

    limit = clamp_non_negative(limit, DEFAULT_CONVERSATION_LIMIT)
    skip = clamp_non_negative(skip, 0)

    try:
        criteria = message_criteria(
            phone=client_phone,
            project=project,
            start_date=parse_datetime(start_date),
            end_date=parse_datetime(end_date),
        )
        if not include_system_messages:
            criteria.append(Message.from_phone == client_phone)

        messages = find_messages(db, criteria, newest_first=False, limit=limit, skip=skip)
        total = count_messages(db, criteria)
        client_count = count_messages(db, criteria + [Message.from_phone == client_phone])
        first, last, total_cost = conversation_bounds(db, criteria)
    except (ServiceError, SQLAlchemyError) as e:
        logger.error(f"Conversation lookup failed for {client_phone}: {e}")
        if isinstance(e, ServiceError):
            return Result.failure(e)
        return Result.failure(ServiceError(f"conversation lookup failed: {e}"))

    annotated = []
    for message in messages:
        item = serialize_message(message)
        is_from_client = message.from_phone == client_phone
        item["direction"] = "outgoing" if is_from_client else "incoming"
        item["is_from_client"] = is_from_client
        item["is_to_client"] = message.to_phone == client_phone
        annotated.append(item)

    stats = ConversationStats(
        total_messages=total,
        client_messages=client_count,
        system_messages=total - client_count,
        first_message_at=first,
        last_message_at=last,
        total_cost=total_cost,
        conversation_duration_days=(last - first).days if first and last else 0,
    )
    return Result.success(
        Conversation(
            client_phone=client_phone,
            messages=annotated,
            pagination=Pagination(count=len(annotated), total=total, limit=limit, skip=skip),
            stats=stats,
        )
    )

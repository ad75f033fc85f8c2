"""
Automated reply pipeline behind POST /messages.

For each inbound message, strictly in order:

1. load the sender's conversation as model turns (best effort)
2. ask the language model for a reply
3. store the inbound message (always; the only step allowed to fail the request)
4. store the reply as a pending message from the system's number
5. dispatch the reply over WhatsApp and mark it sent or failed
6. return everything that happened in one envelope

Steps other than 3 report their failures inline instead of raising.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replyhub.ai_service import AIService, GeneratedReply
from replyhub.errors import Result, ServiceError, ValidationError
from replyhub.history import HistoryFilters, PhoneHistory, get_messages_by_phone
from replyhub.metrics import record_pipeline_outcome
from replyhub.schemas import MessageCreate, serialize_message
from replyhub.storage import create_message, get_entity, update_message
from replyhub.utils import normalize_phone_number, utc_now
from replyhub.whatsapp import PROVIDER_NAME, DispatchReceipt, WhatsAppDispatcher

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    """Everything the pipeline did for one inbound message."""
    user_message: Any
    ai_response: Result[GeneratedReply]
    history: Result[PhoneHistory]
    ai_message: Optional[Any] = None
    whatsapp_result: Optional[Result[DispatchReceipt]] = None
    errors: List[dict] = field(default_factory=list)

    def record_error(self, step: str, error: Exception) -> None:
        detail = error.to_dict() if isinstance(error, ServiceError) else {"kind": "storage_error", "message": str(error)}
        self.errors.append(dict(detail, step=step))

    @property
    def outcome(self) -> str:
        if not self.ai_response.ok:
            return "generation_failed"
        if self.whatsapp_result is not None and self.whatsapp_result.ok:
            return "replied"
        return "dispatch_failed"

    def to_envelope(self) -> dict:
        """Composite response: stored messages, raw sub-step results and history."""
        history = self.history.value.to_dict() if self.history.ok else self.history.to_dict()
        return {
            "success": True,
            "data": {
                "user_message": serialize_message(self.user_message),
                "ai_message": serialize_message(self.ai_message) if self.ai_message is not None else None,
                "ai_response": self.ai_response.to_dict(),
                "whatsapp_result": self.whatsapp_result.to_dict() if self.whatsapp_result is not None else None,
                "errors": self.errors,
            },
            "history": history,
        }


class MessagePipeline:
    """
    Orchestrates history -> generation -> persistence -> dispatch.

    Holds no per-request state, so one instance serves the whole process.
    """

    def __init__(
        self,
        ai_service: AIService,
        dispatcher: WhatsAppDispatcher,
        time_typing: int = 1000,
        send_delay: int = 500,
        agent_context: Optional[str] = None,
    ):
        self.ai_service = ai_service
        self.dispatcher = dispatcher
        self.time_typing = time_typing
        self.send_delay = send_delay
        self.agent_context = agent_context

    def _load_project(self, db: Session, project_id: Optional[str]) -> Optional[Any]:
        from replyhub.models import Project

        if not project_id:
            return None
        try:
            return get_entity(db, Project, project_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load project {project_id} for agent context: {e}")
            return None

    async def process(
        self,
        db: Session,
        payload: MessageCreate,
        history_filters: Optional[HistoryFilters] = None,
    ) -> PipelineOutcome:
        """
        Run the pipeline for one inbound message.

        Raises only when the inbound message itself cannot be stored.
        """
        phone_number = payload.from_phone

        history = get_messages_by_phone(db, phone_number, history_filters, format_for_ai=True)
        turns = history.value.messages if history.ok else []
        if not history.ok:
            logger.warning(f"Continuing without history for {phone_number}: {history.error}")

        ai_response = await self.ai_service.generate_response(
            payload.content,
            phone_number,
            turns,
            project=self._load_project(db, payload.project),
            agent_context=self.agent_context,
        )

        user_message = create_message(db, payload.to_fields())
        outcome = PipelineOutcome(user_message=user_message, ai_response=ai_response, history=history)

        if ai_response.ok:
            outcome.ai_message = self._store_reply(db, payload, ai_response.value, outcome)
        else:
            logger.warning(f"No reply generated for message {user_message.id}: {ai_response.error}")

        if outcome.ai_message is not None:
            await self._dispatch_reply(db, phone_number, outcome)

        record_pipeline_outcome(outcome.outcome)
        logger.info(
            f"Pipeline finished for message {user_message.id}: {outcome.outcome}",
            extra={"user_message_id": user_message.id, "pipeline_outcome": outcome.outcome},
        )
        return outcome

    def _store_reply(
        self,
        db: Session,
        payload: MessageCreate,
        reply: GeneratedReply,
        outcome: PipelineOutcome,
    ) -> Optional[Any]:
        """Persist the generated reply as a pending message from the system's number."""
        try:
            if not reply.reply_text:
                raise ValidationError("language model returned an empty reply")
            return create_message(
                db,
                {
                    "project_id": payload.project,
                    "content": reply.reply_text[:1000],
                    "from_phone": payload.to_phone,
                    "to_phone": payload.from_phone,
                    "type": payload.type,
                    "status": "pending",
                    "priority": "normal",
                    "metadata": {
                        "ai_generated": True,
                        "model": reply.model,
                        "usage": reply.usage,
                        "conversation_length": reply.turn_count,
                    },
                },
            )
        except (ServiceError, SQLAlchemyError) as e:
            logger.error(f"Failed to store generated reply: {e}")
            outcome.record_error("persist_reply", e)
            return None

    async def _dispatch_reply(self, db: Session, phone_number: str, outcome: PipelineOutcome) -> None:
        """Send the stored reply and move it to sent or failed."""
        reply = outcome.ai_message

        try:
            number = normalize_phone_number(phone_number)
        except ValidationError as e:
            result = Result.failure(e)
        else:
            result = await self.dispatcher.send_text(
                number,
                reply.content,
                time_typing=self.time_typing,
                delay=self.send_delay,
            )
        outcome.whatsapp_result = result

        metadata = dict(reply.message_metadata or {})
        patch = {
            "attempts": (reply.attempts or 0) + 1,
            "last_attempt_at": utc_now(),
        }
        if result.ok:
            metadata["whatsapp_message_id"] = result.value.message_id
            metadata["whatsapp_status"] = result.value.status
            patch.update(
                status="sent",
                external_id=result.value.message_id,
                provider=PROVIDER_NAME,
                metadata=metadata,
            )
        else:
            metadata["whatsapp_error"] = result.error.to_dict()
            patch.update(status="failed", metadata=metadata)

        try:
            updated = update_message(db, reply.id, patch)
        except (ServiceError, SQLAlchemyError) as e:
            logger.error(f"Failed to record dispatch outcome for message {reply.id}: {e}")
            outcome.record_error("status_update", e)
            return

        outcome.ai_message = updated

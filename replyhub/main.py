import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replyhub.config import settings
from replyhub.errors import NotFoundError, ValidationError
from replyhub.history import HistoryFilters, get_conversation_history, get_messages_by_phone
from replyhub.logging_utils import RequestLoggingMiddleware, log_pipeline_data, setup_logging
from replyhub.metrics import get_metrics, get_metrics_content_type
from replyhub.models import Log, Project
from replyhub.pipeline import MessagePipeline
from replyhub.schemas import (
    ErrorResponse,
    HealthResponse,
    LogCreate,
    LogResponse,
    LogsListResponse,
    LogUpdate,
    MessageCreate,
    MessageResponse,
    MessagesListResponse,
    MessageStatsResponse,
    MessageUpdate,
    PhoneMessagesResponse,
    PipelineResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectsListResponse,
    ProjectUpdate,
    WhatsAppTestRequest,
    WhatsAppTestResponse,
    serialize_message,
)
from replyhub.services import get_pipeline
from replyhub.storage import (
    check_db_health,
    count_messages,
    create_entity,
    delete_entity,
    delete_message,
    find_messages,
    get_db,
    get_entity,
    get_message_stats,
    init_db,
    list_entities,
    message_criteria,
    require_message,
    update_entity,
    update_message,
)
from replyhub.utils import clamp_non_negative, mask_secret, normalize_phone_number, parse_datetime


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

NOT_FOUND = {404: {"model": ErrorResponse, "description": "Not found"}}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Reply Hub API",
    description="Projects, logs and conversational messages with automated WhatsApp replies",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def _unprocessable(error: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=error.message)


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema is applied.
    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.get(f"{API_PREFIX}/messages", response_model=MessagesListResponse)
async def list_messages(
    project: Optional[str] = None,
    status_param: Annotated[Optional[str], Query(alias="status")] = None,
    type: Optional[str] = None,
    from_phone: Annotated[Optional[str], Query(alias="fromPhone")] = None,
    to_phone: Annotated[Optional[str], Query(alias="toPhone")] = None,
    priority: Optional[str] = None,
    start_date: Annotated[Optional[str], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate")] = None,
    limit: Optional[str] = None,
    skip: Optional[str] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List stored messages, newest first.

    Query Parameters:
        - project, status, type, fromPhone, toPhone, priority: exact match
        - startDate / endDate: inclusive bounds on creation time (ISO-8601)
        - limit (default 50), skip (default 0)
    """
    try:
        criteria = message_criteria(
            project=project,
            status=status_param,
            type=type,
            from_phone=from_phone,
            to_phone=to_phone,
            priority=priority,
            start_date=parse_datetime(start_date),
            end_date=parse_datetime(end_date),
        )
    except ValidationError as e:
        raise _unprocessable(e)

    messages = find_messages(
        db,
        criteria,
        newest_first=True,
        limit=clamp_non_negative(limit, 50),
        skip=clamp_non_negative(skip, 0),
    )
    total = count_messages(db, criteria)
    logger.info(f"GET /messages: returned {len(messages)} of {total} messages")

    return MessagesListResponse(
        count=len(messages),
        total=total,
        data=[MessageResponse.model_validate(m) for m in messages],
    )


@app.post(
    f"{API_PREFIX}/messages",
    response_model=PipelineResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"description": "Validation error"}},
)
async def create_message_with_reply(
    request: Request,
    payload: MessageCreate,
    project: Optional[str] = None,
    status_param: Annotated[Optional[str], Query(alias="status")] = None,
    type: Optional[str] = None,
    start_date: Annotated[Optional[str], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate")] = None,
    limit: Optional[str] = None,
    skip: Optional[str] = None,
    db: Session = Depends(get_db),
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> dict:
    """
    Store an inbound message and answer it automatically.

    The query parameters filter the conversation history handed to the
    language model. The response is 201 whenever the inbound message was
    stored; generation and dispatch failures are reported in
    data.ai_response and data.whatsapp_result.
    """
    logger.info(f"Inbound message from {payload.from_phone}")

    filters = HistoryFilters(
        project=project,
        status=status_param,
        type=type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        skip=skip,
    )

    try:
        outcome = await pipeline.process(db, payload, filters)
    except ValidationError as e:
        raise _unprocessable(e)
    except SQLAlchemyError as e:
        logger.error(f"Failed to store inbound message: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    whatsapp = outcome.whatsapp_result
    log_pipeline_data(
        request,
        user_message_id=outcome.user_message.id,
        ai_message_id=outcome.ai_message.id if outcome.ai_message is not None else None,
        generation="ok" if outcome.ai_response.ok else "failed",
        dispatch=None if whatsapp is None else ("sent" if whatsapp.ok else "failed"),
    )
    return outcome.to_envelope()


@app.get(f"{API_PREFIX}/messages/stats", response_model=MessageStatsResponse)
async def message_stats(
    project: Optional[str] = None,
    db: Session = Depends(get_db),
) -> MessageStatsResponse:
    """Message counts per status and total cost, optionally for one project."""
    stats = get_message_stats(db, message_criteria(project=project))
    return MessageStatsResponse(**stats)


@app.get(f"{API_PREFIX}/messages/phone/{{phone_number}}", response_model=PhoneMessagesResponse)
async def messages_by_phone(
    phone_number: str,
    project: Optional[str] = None,
    status_param: Annotated[Optional[str], Query(alias="status")] = None,
    type: Optional[str] = None,
    start_date: Annotated[Optional[str], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate")] = None,
    limit: Optional[str] = None,
    skip: Optional[str] = None,
    format_for_ai: Annotated[bool, Query(alias="formatForAI")] = False,
    db: Session = Depends(get_db),
) -> PhoneMessagesResponse:
    """
    Messages sent by or to a phone number.

    With formatForAI=true the result is the oldest-first list of
    {role, content} turns fed to the language model.
    """
    filters = HistoryFilters(
        project=project,
        status=status_param,
        type=type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        skip=skip,
    )
    result = get_messages_by_phone(db, phone_number, filters, format_for_ai=format_for_ai)
    if not result.ok:
        if isinstance(result.error, ValidationError):
            raise _unprocessable(result.error)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error.message
        )

    history = result.value.to_dict()
    return PhoneMessagesResponse(
        count=history["pagination"]["count"],
        total=history["pagination"]["total"],
        data=history["messages"],
        pagination=history["pagination"],
    )


@app.get(f"{API_PREFIX}/messages/conversation/{{phone_number}}")
async def conversation(
    phone_number: str,
    project: Optional[str] = None,
    start_date: Annotated[Optional[str], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate")] = None,
    limit: Optional[str] = None,
    skip: Optional[str] = None,
    include_system_messages: Annotated[bool, Query(alias="includeSystemMessages")] = True,
    db: Session = Depends(get_db),
) -> dict:
    """Chronological conversation with a client, with direction flags and stats."""
    result = get_conversation_history(
        db,
        phone_number,
        project=project,
        start_date=start_date,
        end_date=end_date,
        limit=limit if limit is not None else 100,
        skip=skip,
        include_system_messages=include_system_messages,
    )
    if not result.ok:
        if isinstance(result.error, ValidationError):
            raise _unprocessable(result.error)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error.message
        )
    return {"success": True, "data": result.value.to_dict()}


@app.post(f"{API_PREFIX}/messages/whatsapp/test", response_model=WhatsAppTestResponse)
async def whatsapp_test(
    body: WhatsAppTestRequest,
    response: Response,
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> WhatsAppTestResponse:
    """
    Check the gateway configuration: force a login, then send a test message.
    Returns 500 when the login fails.
    """
    dispatcher = pipeline.dispatcher
    session_manager = dispatcher.session_manager
    config = {
        "has_email": bool(session_manager.email),
        "has_password": bool(session_manager.password),
        "has_device_token": bool(dispatcher.device_token),
        "email": mask_secret(session_manager.email),
        "device_token": mask_secret(dispatcher.device_token, visible=8),
    }
    logger.info("WhatsApp connection test requested", extra={"config": config})

    connection = await dispatcher.test_connection()
    if not connection.ok:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return WhatsAppTestResponse(success=False, config=config, connection_test=connection.to_dict())

    try:
        phone_number = normalize_phone_number(body.phone_number)
    except ValidationError as e:
        raise _unprocessable(e)
    send_result = await dispatcher.send_text(phone_number, body.message)

    return WhatsAppTestResponse(
        success=True,
        config=config,
        connection_test=connection.to_dict(),
        send_result=send_result.to_dict(),
        phone_number=phone_number,
    )


@app.get(f"{API_PREFIX}/messages/{{message_id}}", responses=NOT_FOUND)
async def get_message(message_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        message = require_message(db, message_id)
    except NotFoundError:
        raise _not_found("Message")
    return {"success": True, "data": serialize_message(message)}


@app.put(f"{API_PREFIX}/messages/{{message_id}}", responses=NOT_FOUND)
async def put_message(message_id: str, body: MessageUpdate, db: Session = Depends(get_db)) -> dict:
    """
    Partially update a message.

    Status only moves forward; failed and cancelled are final. A status
    change against that order returns 422.
    """
    try:
        message = update_message(db, message_id, body.model_dump(exclude_unset=True))
    except NotFoundError:
        raise _not_found("Message")
    except ValidationError as e:
        raise _unprocessable(e)
    return {"success": True, "data": serialize_message(message)}


@app.delete(f"{API_PREFIX}/messages/{{message_id}}", responses=NOT_FOUND)
async def remove_message(message_id: str, db: Session = Depends(get_db)) -> dict:
    message = delete_message(db, message_id)
    if message is None:
        raise _not_found("Message")
    logger.info(f"Message deleted: {message_id}")
    return {"success": True, "data": serialize_message(message)}


# =============================================================================
# Project Routes
# =============================================================================

@app.get(f"{API_PREFIX}/projects", response_model=ProjectsListResponse)
async def list_projects(db: Session = Depends(get_db)) -> ProjectsListResponse:
    projects = list_entities(db, Project)
    return ProjectsListResponse(
        count=len(projects),
        data=[ProjectResponse.model_validate(p) for p in projects],
    )


@app.post(f"{API_PREFIX}/projects", status_code=status.HTTP_201_CREATED)
async def create_project(body: ProjectCreate, db: Session = Depends(get_db)) -> dict:
    try:
        project = create_entity(db, Project, body.model_dump(exclude_none=True))
    except SQLAlchemyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to create project: {e}")
    logger.info(f"Project created: {project.id}")
    return {"success": True, "data": ProjectResponse.model_validate(project).model_dump(mode="json")}


@app.get(f"{API_PREFIX}/projects/{{project_id}}", responses=NOT_FOUND)
async def get_project(project_id: str, db: Session = Depends(get_db)) -> dict:
    project = get_entity(db, Project, project_id)
    if project is None:
        raise _not_found("Project")
    return {"success": True, "data": ProjectResponse.model_validate(project).model_dump(mode="json")}


@app.put(f"{API_PREFIX}/projects/{{project_id}}", responses=NOT_FOUND)
async def put_project(project_id: str, body: ProjectUpdate, db: Session = Depends(get_db)) -> dict:
    project = update_entity(db, Project, project_id, body.model_dump(exclude_unset=True))
    if project is None:
        raise _not_found("Project")
    return {"success": True, "data": ProjectResponse.model_validate(project).model_dump(mode="json")}


@app.delete(f"{API_PREFIX}/projects/{{project_id}}", responses=NOT_FOUND)
async def remove_project(project_id: str, db: Session = Depends(get_db)) -> dict:
    project = delete_entity(db, Project, project_id)
    if project is None:
        raise _not_found("Project")
    return {"success": True, "data": ProjectResponse.model_validate(project).model_dump(mode="json")}


# =============================================================================
# Log Routes
# =============================================================================

@app.get(f"{API_PREFIX}/logs", response_model=LogsListResponse)
async def list_logs(
    project: Optional[str] = None,
    level: Optional[str] = None,
    db: Session = Depends(get_db),
) -> LogsListResponse:
    criteria = []
    if project:
        criteria.append(Log.project_id == project)
    if level:
        criteria.append(Log.level == level)
    logs = list_entities(db, Log, criteria)
    return LogsListResponse(count=len(logs), data=[LogResponse.model_validate(entry) for entry in logs])


@app.post(f"{API_PREFIX}/logs", status_code=status.HTTP_201_CREATED)
async def create_log(body: LogCreate, db: Session = Depends(get_db)) -> dict:
    entry = create_entity(db, Log, body.to_fields())
    return {"success": True, "data": LogResponse.model_validate(entry).model_dump(mode="json")}


@app.get(f"{API_PREFIX}/logs/{{log_id}}", responses=NOT_FOUND)
async def get_log(log_id: str, db: Session = Depends(get_db)) -> dict:
    entry = get_entity(db, Log, log_id)
    if entry is None:
        raise _not_found("Log")
    return {"success": True, "data": LogResponse.model_validate(entry).model_dump(mode="json")}


@app.put(f"{API_PREFIX}/logs/{{log_id}}", responses=NOT_FOUND)
async def put_log(log_id: str, body: LogUpdate, db: Session = Depends(get_db)) -> dict:
    entry = update_entity(db, Log, log_id, body.to_fields())
    if entry is None:
        raise _not_found("Log")
    return {"success": True, "data": LogResponse.model_validate(entry).model_dump(mode="json")}


@app.delete(f"{API_PREFIX}/logs/{{log_id}}", responses=NOT_FOUND)
async def remove_log(log_id: str, db: Session = Depends(get_db)) -> dict:
    entry = delete_entity(db, Log, log_id)
    if entry is None:
        raise _not_found("Log")
    return {"success": True, "data": LogResponse.model_validate(entry).model_dump(mode="json")}


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counts and latency, language model call outcomes,
    gateway login and dispatch outcomes, and reply pipeline outcomes.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

"""
Generation request ledger.

One ``GenerationRequest`` per client-visible unit of work. Status only moves
forward along PENDING -> PROCESSING -> COMPLETED | FAILED; PROCESSING may be
re-entered to point ``relatedEntityId`` at the next batch item. Records are
never deleted.
"""
import uuid
import logging
from typing import List, Optional

from .errors import ConflictError, InvalidTransitionError, NotFoundError, ServiceError
from .kv_storage import update_versioned
from .models import GenerationRequest, GenerationStatus, GenerationType, TERMINAL_STATUSES, utc_now_iso

logger = logging.getLogger(__name__)

_RANK = {
    GenerationStatus.PENDING: 0,
    GenerationStatus.PROCESSING: 1,
    GenerationStatus.COMPLETED: 2,
    GenerationStatus.FAILED: 2,
}

DEFAULT_FAILURE_MESSAGE = "Generation failed"


def can_transition(current: GenerationStatus, new: GenerationStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if current == new:
        return current == GenerationStatus.PROCESSING
    return _RANK[new] > _RANK[current]


def accepts_delivery(request: GenerationRequest) -> bool:
    """
    Whether a worker should act on an event for ``request``.

    A redelivery after success is acknowledged and dropped. A redelivery after
    failure raises, so the route keeps retrying and finally dead-letters it.
    """
    if request.status == GenerationStatus.COMPLETED:
        logger.warning(f"Request {request.request_id} already COMPLETED; dropping redelivered event")
        return False
    if request.status == GenerationStatus.FAILED:
        raise ConflictError(
            f"Request {request.request_id} already failed: {request.error_message or DEFAULT_FAILURE_MESSAGE}",
            code="REQUEST_FAILED",
        )
    return True


def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def user_requests_key(user_id: str) -> str:
    return f"user:{user_id}:requests"


class GenerationRequestLedger:
    def __init__(self, kv):
        self.kv = kv

    async def create(self, user_id: str, type: GenerationType, workflow_id: Optional[str] = None,
                     related_entity_id: Optional[str] = None) -> GenerationRequest:
        request = GenerationRequest(
            request_id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            workflow_id=workflow_id,
            related_entity_id=related_entity_id,
        )
        await self.kv.put(request_key(request.request_id), request.to_json_dict(), only_if_absent=True)
        await self.kv.add_to_index(user_requests_key(user_id), request.request_id)
        logger.info(f"Created {type.value} request {request.request_id} for user {user_id}")
        return request

    async def get(self, request_id: str) -> Optional[GenerationRequest]:
        doc = await self.kv.get(request_key(request_id))
        return GenerationRequest.model_validate(doc) if doc else None

    async def require(self, request_id: str) -> GenerationRequest:
        request = await self.get(request_id)
        if request is None:
            raise NotFoundError(f"Generation request {request_id} not found", code="REQUEST_NOT_FOUND")
        return request

    async def list_for_user(self, user_id: str) -> List[GenerationRequest]:
        requests = []
        for request_id in await self.kv.index_members(user_requests_key(user_id)):
            request = await self.get(request_id)
            if request:
                requests.append(request)
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def transition(self, request_id: str, status: GenerationStatus,
                         related_entity_id: Optional[str] = None,
                         error_message: Optional[str] = None) -> GenerationRequest:
        """Move a request forward. Raises InvalidTransitionError for any backwards or out-of-terminal move."""

        def apply(doc):
            current = GenerationRequest.model_validate(doc)
            if not can_transition(current.status, status):
                raise InvalidTransitionError(
                    f"Request {request_id} cannot move from {current.status.value} to {status.value}"
                )
            current.status = status
            if related_entity_id is not None:
                current.related_entity_id = related_entity_id
            if status == GenerationStatus.FAILED:
                current.error_message = error_message or DEFAULT_FAILURE_MESSAGE
            current.updated_at = utc_now_iso()
            return current.to_json_dict()

        doc = await update_versioned(self.kv, request_key(request_id), apply)
        if doc is None:
            raise NotFoundError(f"Generation request {request_id} not found", code="REQUEST_NOT_FOUND")
        logger.info(f"Request {request_id} -> {status.value}")
        return GenerationRequest.model_validate(doc)

    async def mark_failed(self, request_id: str, error_message: str) -> Optional[GenerationRequest]:
        """Best-effort FAILED marking used on error paths; a request that already finished is left alone."""
        try:
            return await self.transition(request_id, GenerationStatus.FAILED, error_message=error_message)
        except InvalidTransitionError as e:
            logger.warning(f"Not marking request {request_id} failed: {e.message}")
        except ServiceError as e:
            logger.error(f"Could not mark request {request_id} failed: {e.message}")
        return None

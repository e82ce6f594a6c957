import logging
import secrets
import time

from fastapi import APIRouter, Depends, HTTPException

from chatcommerce.config import settings
from chatcommerce.dependecies import get_classifier, get_current_user, get_db_path, get_dispatcher
from chatcommerce.models.database import get_recent_messages, save_chat_message
from chatcommerce.models.schemas import ChatRequest, ChatResponse, User, ok
from chatcommerce.services.dialogue import DialogueDispatcher
from chatcommerce.services.intent import IntentClassifier, build_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


@router.post("")
async def chat(
    body: ChatRequest,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
    classifier: IntentClassifier = Depends(get_classifier),
    dispatcher: DialogueDispatcher = Depends(get_dispatcher),
):
    """One conversational turn: classify, act, remember, reply."""
    message = body.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    session_id = body.session_id or generate_session_id()

    recent = await get_recent_messages(db_path, user.id, session_id, limit=settings.CHAT_CONTEXT_TURNS)
    intent_result = await classifier.classify(message, build_context(recent))
    logger.info(
        "Chat turn for user %s classified as %s (%.2f)",
        user.id,
        intent_result.intent,
        intent_result.confidence,
    )

    result = await dispatcher.handle(intent_result, user, message)

    await save_chat_message(
        db_path,
        user.id,
        session_id,
        message,
        result.response,
        result.intent,
        entities=result.entities.model_dump(by_alias=True, exclude_none=True),
        max_messages=settings.MAX_CONVERSATION_TURNS,
    )

    reply = ChatResponse(**result.model_dump(), session_id=session_id)
    return ok(reply.model_dump(mode="json", by_alias=True, exclude_none=True))

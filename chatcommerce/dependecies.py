from functools import lru_cache

from fastapi import Cookie, Depends, Header, HTTPException

from chatcommerce.config import settings
from chatcommerce.models.database import get_user_by_token
from chatcommerce.models.schemas import User
from chatcommerce.services.bkash import BkashClient
from chatcommerce.services.dialogue import DialogueDispatcher
from chatcommerce.services.intent import IntentClassifier, KeywordIntentClassifier, LLMIntentClassifier
from chatcommerce.services.llm import LLMClient


def get_db_path() -> str:
    """Provide the database path to endpoint functions."""
    return settings.SQLITE_DB_PATH


def get_token(
    authorization: str | None = Header(default=None),
    auth_token: str | None = Cookie(default=None, alias="auth-token"),
) -> str | None:
    """Bearer token from the Authorization header, falling back to the auth cookie."""
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or auth_token
    return auth_token


async def get_current_user(
    token: str | None = Depends(get_token),
    db_path: str = Depends(get_db_path),
) -> User:
    user = await get_user_by_token(db_path, token) if token else None
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


@lru_cache
def get_llm() -> LLMClient:
    return LLMClient(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.CLAUDE_MODEL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


def get_classifier(llm: LLMClient = Depends(get_llm)) -> IntentClassifier:
    """Claude when a key is configured, keyword rules otherwise."""
    if settings.INTENT_CLASSIFIER == "keyword" or not llm.enabled:
        return KeywordIntentClassifier()
    return LLMIntentClassifier(llm)


def get_dispatcher(
    db_path: str = Depends(get_db_path),
    llm: LLMClient = Depends(get_llm),
) -> DialogueDispatcher:
    return DialogueDispatcher(db_path, llm, default_country=settings.DEFAULT_COUNTRY)


@lru_cache
def get_payment_gateway() -> BkashClient:
    return BkashClient(
        base_url=settings.BKASH_BASE_URL,
        app_key=settings.BKASH_APP_KEY,
        app_secret=settings.BKASH_APP_SECRET,
        username=settings.BKASH_USERNAME,
        password=settings.BKASH_PASSWORD,
        callback_url=settings.BKASH_CALLBACK_URL,
        timeout=settings.BKASH_TIMEOUT_SECONDS,
    )

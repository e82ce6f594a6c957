from pathlib import Path
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    ANTHROPIC_API_KEY: str = ""             # empty -> keyword classifier, canned inquiry answers
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    LLM_TIMEOUT_SECONDS: float = 20.0
    INTENT_CLASSIFIER: str = "llm"          # "llm" or "keyword"

    SQLITE_DB_PATH: str = str(BASE_DIR / "data" / "store.db")
    MAX_CONVERSATION_TURNS: int = 50
    CHAT_CONTEXT_TURNS: int = 5

    BKASH_BASE_URL: str = ""
    BKASH_APP_KEY: str = ""
    BKASH_APP_SECRET: str = ""
    BKASH_USERNAME: str = ""
    BKASH_PASSWORD: str = ""
    BKASH_CALLBACK_URL: str = ""
    BKASH_TIMEOUT_SECONDS: float = 15.0

    FRONTEND_BASE_URL: str = "http://localhost:3000"
    DEFAULT_COUNTRY: str = "Bangladesh"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings() #type: ignore

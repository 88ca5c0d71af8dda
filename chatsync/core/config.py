# chatsync/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """
    Setup environment variables.
        - STORE_BACKEND the store to use: "memory" or "redis"
        - STORE_TIMEOUT_SECONDS upper bound for any single store call
        - SEARCH_LIMIT max users returned by a user search
        - AUTH_MODE how callers are identified: "token" (JWT) or "header"
        - OPENAI_* settings for the optional assistant
    """

    # Load environment variables from the .env file
    load_dotenv()

    STORE_BACKEND: Literal["memory", "redis"] = os.getenv("STORE_BACKEND", "memory")
    STORE_TIMEOUT_SECONDS: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))
    SEARCH_LIMIT: int = int(os.getenv("SEARCH_LIMIT", "20"))

    REDIS_URL: str = os.getenv("REDIS_URL", "")
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
    REDIS_SSL: bool = _flag("REDIS_SSL", "true")
    REDIS_PREFIX: str = os.getenv("REDIS_PREFIX", "chatsync")

    AUTH_MODE: Literal["token", "header"] = os.getenv("AUTH_MODE", "token")
    AUTH_SECRET: str = os.getenv("AUTH_SECRET", "")
    AUTH_ALGORITHM: str = os.getenv("AUTH_ALGORITHM", "HS256")

    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
    OPENAI_TIMEOUT_SECONDS: float = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "30"))

    def redis_url(self) -> str:
        """Explicit REDIS_URL wins; otherwise build one like Azure Cache expects."""
        if self.REDIS_URL:
            return self.REDIS_URL
        scheme = "rediss" if self.REDIS_SSL else "redis"
        return f"{scheme}://:{self.REDIS_ACCESS_KEY}@{self.REDIS_HOST}:{self.REDIS_PORT}"


settings = Settings()

"""
Configuration module for the vendor evaluation service.
Reads configuration from environment variables and .env file.
"""
import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    """Configuration class that reads from environment variables."""

    def __init__(self):
        # Text generation
        self.OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
        self.OPENAI_BASE_URL: Optional[str] = os.getenv("OPENAI_BASE_URL")
        self.GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
        self.LLM_PROVIDER: Optional[str] = os.getenv("LLM_PROVIDER")
        self.EVAL_MODEL: str = os.getenv("EVAL_MODEL", "gpt-4o")
        self.GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-pro")
        self.EVAL_TEMPERATURE: float = _env_float("EVAL_TEMPERATURE", 0.4)
        self.AGENT_TIMEOUT_SECONDS: float = _env_float("AGENT_TIMEOUT_SECONDS", 30.0)

        # External connectors
        self.CONNECTORS_FILE: Optional[str] = os.getenv("CONNECTORS_FILE")
        self.CONNECTOR_TIMEOUT_SECONDS: float = _env_float("CONNECTOR_TIMEOUT_SECONDS", 10.0)
        self.CONNECTOR_CACHE_TTL: int = _env_int("CONNECTOR_CACHE_TTL", 300)
        self.REDIS_URL: Optional[str] = os.getenv("REDIS_URL")

        # Knowledge backend
        self.CHROMA_PATH: Optional[str] = os.getenv("CHROMA_PATH")
        self.CHROMA_HOST: Optional[str] = os.getenv("CHROMA_HOST")
        self.CHROMA_PORT: int = _env_int("CHROMA_PORT", 8000)
        self.CHROMA_API_KEY: Optional[str] = os.getenv("CHROMA_API_KEY")
        self.KNOWLEDGE_COLLECTION: str = os.getenv("KNOWLEDGE_COLLECTION", "knowledge")
        self.OCR_COLLECTION: str = os.getenv("OCR_COLLECTION", "knowledge-ocr")
        self.EMBED_MODEL: Optional[str] = os.getenv("EMBED_MODEL", "all-mpnet-base-v2")
        self.EMBED_PROVIDER: str = os.getenv("EMBED_PROVIDER", "local")

        # Observability
        self.METRICS_RETENTION_DAYS: int = _env_int("METRICS_RETENTION_DAYS", 7)


# Global config instance
cfg = Config()

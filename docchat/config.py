"""Application configuration with sensible defaults."""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCCHAT_DATA_DIR", str(BASE_DIR / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
TEMPLATES_DIR = BASE_DIR / "web" / "templates"

# Ensure data directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
UPLOAD_DIR.mkdir(exist_ok=True)

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60.0"))
EMBEDDING_CONCURRENCY = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))

# Chunking (character-based). Uploaded files use small chunks, scraped pages larger ones.
PDF_CHUNK_SIZE = int(os.getenv("PDF_CHUNK_SIZE", "500"))
PDF_CHUNK_OVERLAP = int(os.getenv("PDF_CHUNK_OVERLAP", "50"))
WEB_CHUNK_SIZE = int(os.getenv("WEB_CHUNK_SIZE", "1000"))
WEB_CHUNK_OVERLAP = int(os.getenv("WEB_CHUNK_OVERLAP", "200"))

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "20"))
RETRIEVAL_FETCH_MULTIPLIER = int(os.getenv("RETRIEVAL_FETCH_MULTIPLIER", "4"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "8000"))
CONVERSATION_CONTEXT_MESSAGES = int(os.getenv("CONVERSATION_CONTEXT_MESSAGES", "6"))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))

# OCR
OCR_LANGUAGE = os.getenv("OCR_LANGUAGE", "eng")
OCR_DPI = int(os.getenv("OCR_DPI", "200"))

# Web scraping
SCRAPE_MAX_LINKS = int(os.getenv("SCRAPE_MAX_LINKS", "10"))
SCRAPE_TIMEOUT = float(os.getenv("SCRAPE_TIMEOUT", "15.0"))
SCRAPE_USER_AGENT = os.getenv("SCRAPE_USER_AGENT", "Mozilla/5.0 (compatible; DocChat/1.0)")

# Uploads
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "20"))

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL_MINUTES = int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "1440"))
REFRESH_TOKEN_TTL_DAYS = int(os.getenv("REFRESH_TOKEN_TTL_DAYS", "10"))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# CORS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ).split(",")
    if origin.strip()
]

# UI & assets
STATIC_VERSION = os.getenv("STATIC_VERSION", "1.0.0")

# Database and vector index
DB_PATH = DATA_DIR / "docchat.sqlite"
VECTOR_INDEX_PATH = DATA_DIR / "vectors.index"
METADATA_PATH = DATA_DIR / "metadata.json"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

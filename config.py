"""Configuration module for the Book Research Assistant."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Tokenizer (shared by chunking, context budgeting and the embedding models)
TOKENIZER_ENCODING = "cl100k_base"

# Chunking Configuration
CHUNK_SIZE_TOKENS = 512
CHUNK_OVERLAP_TOKENS = 100
MIN_CHUNK_TOKENS = 50
MIN_PAGE_CHARS = 10  # Cleaned pages at or below this length are treated as blank
PDF_HASH_LENGTH = 16

# Embedding Configuration
EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "openai")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))
LOCAL_EMBEDDING_MODEL = os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_BATCH_SIZE = 100  # Provider ceiling per embedding request

# Retry policy for embedding calls (rate limits only)
MAX_RETRIES = 5
RETRY_BASE_DELAY = 1.0
RETRY_MAX_JITTER = 0.5

# Retrieval Configuration
DEFAULT_TOP_K = 5
MAX_TOP_K = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.4
KEYWORD_MATCH_SIMILARITY = 0.45
KEYWORD_MIN_LENGTH = 4
KEYWORD_MAX_TERMS = 6

# Context assembly
MAX_CONTEXT_TOKENS = 3000
DEDUP_OVERLAP_THRESHOLD = 0.8

# Answer generation
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
ANSWER_MAX_TOKENS = 1024
FALLBACK_MAX_TOKENS = 512
ANSWER_TEMPERATURE = 0.2
FALLBACK_TEMPERATURE = 0.1
FALLBACK_SIMILARITY = 0.5  # Best match below this triggers the fallback answer
HISTORY_MESSAGES = 6

# Follow-up suggestions
FOLLOWUP_COUNT = 3
FOLLOWUP_MAX_TOKENS = 200
FOLLOWUP_TEMPERATURE = 0.7
FOLLOWUP_MIN_CHARS = 15

# Storage Configuration
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "./output"))
DB_PATH = Path(os.getenv("DB_PATH", str(OUTPUT_DIR / "library.db")))
CHROMA_PATH = Path(os.getenv("CHROMA_PATH", str(OUTPUT_DIR / "chroma")))
CHROMA_COLLECTION = os.getenv("CHROMA_COLLECTION", "book_chunks")

# Ensure output directories exist
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
CHROMA_PATH.mkdir(parents=True, exist_ok=True)

import os
import tempfile
from dotenv import load_dotenv
import logging

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Configure logging
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

# Content generator
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_MODEL_VERSION = os.getenv("REPLICATE_MODEL_VERSION", "")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "120"))

# Persistence
KV_REST_API_URL = os.getenv("KV_REST_API_URL", "").strip()
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "").strip()
BLOB_STORAGE_DIR = os.getenv("BLOB_STORAGE_DIR", os.path.join(tempfile.gettempdir(), "serial-story"))

# Event bus. Without EVENT_BUS_URL events are delivered in-process.
EVENT_BUS_URL = os.getenv("EVENT_BUS_URL", "").strip()
EVENT_BUS_TOKEN = os.getenv("EVENT_BUS_TOKEN", "").strip()
EVENT_BUS_NAME = os.getenv("EVENT_BUS_NAME", "serial-story-events-" + os.getenv("ENVIRONMENT", "dev"))

STORY_RETRY_ATTEMPTS = int(os.getenv("STORY_RETRY_ATTEMPTS", "2"))
EPISODE_RETRY_ATTEMPTS = int(os.getenv("EPISODE_RETRY_ATTEMPTS", "2"))
# Fewer retries for expensive image generation
IMAGE_RETRY_ATTEMPTS = int(os.getenv("IMAGE_RETRY_ATTEMPTS", "1"))
MAX_EVENT_AGE_S = int(os.getenv("MAX_EVENT_AGE_S", str(2 * 60 * 60)))
# In-process bus only: how many published envelopes stay inspectable
EVENT_HISTORY_LIMIT = int(os.getenv("EVENT_HISTORY_LIMIT", "1000"))

# Workflow limits
MAX_STORIES_PER_WORKFLOW = 10
MAX_BATCH_SIZE = 5
MAX_EVENTS_PER_BATCH = 10

WORKFLOW_RATE_LIMIT = int(os.getenv("WORKFLOW_RATE_LIMIT", "5"))
WORKFLOW_RATE_WINDOW_S = int(os.getenv("WORKFLOW_RATE_WINDOW_S", "60"))
CONTINUE_RATE_LIMIT = int(os.getenv("CONTINUE_RATE_LIMIT", "10"))
CONTINUE_RATE_WINDOW_S = int(os.getenv("CONTINUE_RATE_WINDOW_S", "300"))

# Rough estimates surfaced to clients, not guarantees
MINUTES_PER_STORY = int(os.getenv("MINUTES_PER_STORY", "3"))
MINUTES_PER_EPISODE = int(os.getenv("MINUTES_PER_EPISODE", "2"))

IMAGE_REQUEST_DELAY_S = float(os.getenv("IMAGE_REQUEST_DELAY_S", "2"))
MAX_SCENES = int(os.getenv("MAX_SCENES", "8"))

# Comma-separated list of allowed origins for CORS (e.g., "https://app.example.com,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    keys_present = all([OPENAI_API_KEY, REPLICATE_API_TOKEN])
    if not keys_present:
        missing = []
        if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
        if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present

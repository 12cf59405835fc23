# env vars + constants
import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")

# client side
SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000").rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "5.0"))
CURRENT_USER = os.getenv("CURRENT_USER", "")
DATA_DIR = os.getenv("DATA_DIR", ".synccounter")

FLUSH_DELAY = float(os.getenv("FLUSH_DELAY", "2.0"))
MAX_BATCH_SIZE = int(os.getenv("MAX_BATCH_SIZE", "10"))
SAFETY_FLUSH_INTERVAL = float(os.getenv("SAFETY_FLUSH_INTERVAL", "30.0"))
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "30.0"))

HISTORY_RETENTION_DAYS = int(os.getenv("HISTORY_RETENTION_DAYS", "14"))
STALE_AFTER = float(os.getenv("STALE_AFTER", "300.0"))

# server side
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))

import os
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = Path(os.getenv("DATA_DIR", str(ROOT_DIR / "data")))

DB_PATH = str(DATA_DIR / "metadata.db")
PAYLOAD_DIR = str(DATA_DIR / "chunks")

CHUNK_INTERVAL_MS = int(os.getenv("CHUNK_INTERVAL_MS", "60000"))
FINAL_CHUNK_MIN_MS = int(os.getenv("FINAL_CHUNK_MIN_MS", "1000"))

WORKER_ID = os.getenv("WORKER_ID", "chunker-worker").strip()

LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "").strip()
LEDGER_SIGNER_URL = os.getenv("LEDGER_SIGNER_URL", "").strip()
LEDGER_CONTRACT_ID = os.getenv("LEDGER_CONTRACT_ID", "").strip()
STORAGE_BACKEND_URL = os.getenv("STORAGE_BACKEND_URL", "http://localhost:3000").strip()
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

DISPATCH_MAX_ATTEMPTS = int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3"))
DISPATCH_RETRY_SECONDS = float(os.getenv("DISPATCH_RETRY_SECONDS", "2.0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CHUNK_LIST_DEFAULT_LIMIT = 50
CHUNK_LIST_MAX_LIMIT = 200

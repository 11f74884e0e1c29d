import os
from pathlib import Path

from dotenv import load_dotenv

# --- Base Directory ---
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# --- Load Environment Variables ---
load_dotenv(BASE_DIR / ".env")


def env_bool(key, default):
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Backend ---
DRIVER = os.getenv("TPCC_DRIVER", "dgraph")
URI = os.getenv("TPCC_URI", "")
DBNAME = os.getenv("TPCC_DBNAME", "tpcc")
TRANSACTIONS = env_bool("TPCC_TRANSACTIONS", True)
ATOMIC_CLAIM = env_bool("TPCC_ATOMIC_CLAIM", False)

# --- Executor ---
BATCH_SIZE = int(os.getenv("TPCC_BATCH_SIZE", "512"))
RETRIES = int(os.getenv("TPCC_RETRIES", "10"))

# --- Workload ---
WAREHOUSES = int(os.getenv("TPCC_WAREHOUSES", "1"))
THREADS = int(os.getenv("TPCC_THREADS", "4"))
TXN_NUM = int(os.getenv("TPCC_TXN_NUM", "1000"))

# --- Logging ---
LOG_LEVEL = os.getenv("TPCC_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("TPCC_LOG_FILE")

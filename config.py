import os
from datetime import datetime, timezone
import time

import pyodbc
import requests
from requests.adapters import HTTPAdapter

ENV = os.getenv("ENV", "TEST").upper()

DEFAULTS = {
    "TEST": {
        "RPC_URL": "https://fullnode.testnet.sui.io:443",
        "DSN": "ChainOrders_Test64",
        "DB_USER": "odbcuser",
        "DB_PASS": "",
    },
    "LIVE": {
        "RPC_URL": "https://fullnode.mainnet.sui.io:443",
        "DSN": "ChainOrders_Live64",
        "DB_USER": "chainsync",
        "DB_PASS": "",
    }
}

cfg = DEFAULTS["LIVE"] if ENV == "LIVE" else DEFAULTS["TEST"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if raw.strip() == "":
        return default
    return int(raw)


def _env_list(name: str, default: str = "") -> list[str]:
    return [e.strip() for e in os.getenv(name, default).split(",") if e.strip()]


# ---------------- Ledger ----------------
SUI_RPC_URL = os.getenv("SUI_RPC_URL", cfg["RPC_URL"])
PACKAGE_ID = os.getenv("PACKAGE_ID", "")
DAPP_HUB_ID = os.getenv("DAPP_HUB_ID", "")
SUI_ADMIN_PRIVATE_KEY = os.getenv("SUI_ADMIN_PRIVATE_KEY", "")
GAS_BUDGET = _env_int("GAS_BUDGET", 50_000_000)
RPC_TIMEOUT_SECONDS = _env_int("RPC_TIMEOUT_SECONDS", 30)

CHAIN_EVENT_LIMIT = _env_int("CHAIN_EVENT_LIMIT", 200)
CHAIN_EVENT_PAGE_SIZE = _env_int("CHAIN_EVENT_PAGE_SIZE", 50)

# Retry policy for every ledger call (reads and admin writes)
RPC_RETRY_ATTEMPTS = _env_int("RPC_RETRY_ATTEMPTS", 5)
RPC_RETRY_BASE_DELAY_MS = _env_int("RPC_RETRY_BASE_DELAY_MS", 800)
RPC_RETRY_MAX_DELAY_MS = _env_int("RPC_RETRY_MAX_DELAY_MS", 8000)
RPC_RETRY_JITTER_MS = _env_int("RPC_RETRY_JITTER_MS", 250)

# ---------------- Cache ----------------
CHAIN_ORDER_CACHE_TTL_MS = _env_int("CHAIN_ORDER_CACHE_TTL_MS", 30_000)
CHAIN_ORDER_MAX_CACHE_AGE_MS = _env_int("CHAIN_ORDER_MAX_CACHE_AGE_MS", 300_000)

# ---------------- Sweeps ----------------
# hours <= 0 disables the sweep
CHAIN_ORDER_AUTO_CANCEL_HOURS = _env_int("CHAIN_ORDER_AUTO_CANCEL_HOURS", 24)
CHAIN_ORDER_AUTO_CANCEL_MAX = _env_int("CHAIN_ORDER_AUTO_CANCEL_MAX", 10)
CHAIN_ORDER_AUTO_COMPLETE_HOURS = _env_int("CHAIN_ORDER_AUTO_COMPLETE_HOURS", 24)
CHAIN_ORDER_AUTO_COMPLETE_MAX = _env_int("CHAIN_ORDER_AUTO_COMPLETE_MAX", 10)
CHAIN_ORDER_AUTO_FINALIZE_MAX = _env_int("CHAIN_ORDER_AUTO_FINALIZE_MAX", 10)

# ---------------- Reconciliation ----------------
# Counterparty addresses that mean "nobody assigned yet" (zero address is always one)
DEFAULT_COMPANION = os.getenv("DEFAULT_COMPANION", "")
SENTINEL_COMPANIONS = _env_list("SENTINEL_COMPANIONS")
if DEFAULT_COMPANION:
    SENTINEL_COMPANIONS.append(DEFAULT_COMPANION)

# meta.paymentMode values whose fee/deposit are owned by another settlement rail
ALT_SETTLEMENT_MODES = _env_list("ALT_SETTLEMENT_MODES", "diamond_escrow")
ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "CNY")

# ---------------- Order store (external relational DB) ----------------
DSN      = os.getenv("DSN", cfg["DSN"])
DB_USER  = os.getenv("DB_USER", cfg["DB_USER"])
DB_PASS  = os.getenv("DB_PASS", cfg["DB_PASS"])
ORDER_TABLE = os.getenv("ORDER_TABLE", "admin_orders")

# Email recipients
ADMIN_EMAILS = _env_list("ADMIN_EMAILS")

EMAIL_CONFIG = {
    "smtp_server": os.getenv("SMTP_SERVER", "smtp.office365.com"),
    "smtp_port": int(os.getenv("SMTP_PORT", 587)),
    "smtp_username": os.getenv("SMTP_USERNAME", ""),
    "smtp_password": os.getenv("SMTP_PASSWORD", ""),  # set via ENV
    "from_addr": os.getenv("FROM_EMAIL", ""),
}

# ---------------- Paths (stable, absolute) ----------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Logging
LOG_DIR = os.getenv("LOG_DIR", os.path.join(BASE_DIR, "logs"))
LOG_FILE = os.getenv("LOG_FILE", "chain_sync.log")

# Local state DB (SQLite): sync cursor + run history
STATE_DB_PATH = os.getenv("STATE_DB_PATH", os.path.join(BASE_DIR, "state.db"))


# -------------- DB Helpers --------------
def get_db_conn() -> pyodbc.Connection:
    return pyodbc.connect(
        f"DSN={DSN};UID={DB_USER};PWD={DB_PASS}",
        autocommit=False,
        timeout=30,
    )

# -------------- HTTP Session --------------
# Retries are handled by chain.retry so every ledger call shares one policy.
SESSION = requests.Session()
SESSION.mount("http://", HTTPAdapter(pool_connections=4, pool_maxsize=16))
SESSION.mount("https://", HTTPAdapter(pool_connections=4, pool_maxsize=16))

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def now_ms() -> int:
    return int(time.time() * 1000)

import os
from pathlib import Path

# SQLite file location for the vault (records, grants, requests, audit)
DATA_DIR = Path(os.getenv("CARECIPHER_DATA_DIR", "./data"))
DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DATA_DIR / "carecipher.db"
DB_URL = os.getenv("CARECIPHER_DB_URL", f"sqlite:///{DB_PATH.resolve()}")

# Local reference coprocessor state (keys + sealed values), kept apart from the vault
COPROCESSOR_DB_PATH = DATA_DIR / "coprocessor.db"
COPROCESSOR_DB_URL = os.getenv("CARECIPHER_COPROCESSOR_DB_URL", f"sqlite:///{COPROCESSOR_DB_PATH.resolve()}")

# Bearer tokens for the HTTP API
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_TTL_MIN = int(os.getenv("ACCESS_TOKEN_TTL_MIN", "120"))

# Who the decryption coordinator trusts as the oracle, and who may change that
GATEWAY_IDENTITY = os.getenv("CARECIPHER_GATEWAY", "gateway")
ADMIN_IDENTITY = os.getenv("CARECIPHER_ADMIN", "admin")

# Encrypted fields are 16-bit unsigned integers
CIPHERTEXT_BITS = 16

# In-process coprocessor + gateway, and the /dev endpoints that drive them
LOCAL_STACK = os.getenv("CARECIPHER_LOCAL_STACK", "1").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("CARECIPHER_LOG_LEVEL", "INFO")

# Live disclosures nobody collects are dropped after this long (the sealed audit copy stays)
DISCLOSURE_TTL_SEC = float(os.getenv("CARECIPHER_DISCLOSURE_TTL_SEC", "300"))
DISCLOSURE_MAX_SLOTS = int(os.getenv("CARECIPHER_DISCLOSURE_MAX_SLOTS", "1024"))

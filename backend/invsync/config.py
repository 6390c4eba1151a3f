# backend/invsync/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/invsync.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///invsync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Fixed VAT rate applied by the price ledger (22%)
    VAT_RATE = float(os.environ.get("INVSYNC_VAT_RATE", "0.22"))

    # Orphaned unit repair policy: "mark" (non-destructive) or "delete"
    ORPHAN_POLICY = os.environ.get("INVSYNC_ORPHAN_POLICY", "mark")

    # Transient I/O retry settings for the synchronizer and repair engine
    RETRY_ATTEMPTS = int(os.environ.get("INVSYNC_RETRY_ATTEMPTS", "3"))
    RETRY_BACKOFF = float(os.environ.get("INVSYNC_RETRY_BACKOFF", "0.1"))

    LOG_LEVEL = os.environ.get("INVSYNC_LOG_LEVEL", "INFO")

    # Publish row changes after commit and let the supplier synchronizer
    # follow them (disable for deterministic tests)
    CHANGE_FEED_ENABLED = os.environ.get("INVSYNC_CHANGE_FEED", "1") not in ("0", "false", "no")

"""
Card Library configuration.

Configuration via environment variables:
  CARD_DATA_DIR          - Folder for settings, database and thumbnail cache (default: ./data)
  CARD_DB_FILE           - SQLite database file (default: <CARD_DATA_DIR>/cards.db)
  CARD_HOST              - Host to bind to (default: 0.0.0.0)
  CARD_PORT              - Port to bind to (default: 8787)
  CARD_SCAN_CONCURRENCY  - Files processed concurrently during a scan (default: 5)
  CARD_WATCH_FILES       - Watch the cards folder for changes (default: true)
  CARD_WATCH_POLLING     - Use the polling observer, no inotify limits (default: false)
  CARD_WATCH_DEBOUNCE    - Seconds of quiet before a watcher-triggered scan (default: 2.0)
  CARD_WATCH_STABILITY   - Seconds a new file's size must hold still (default: 1.5)
  CARD_THUMBNAILS        - Generate WebP thumbnails (default: true)
  CARD_THUMBNAIL_WIDTH   - Thumbnail width in pixels (default: 300)
  CARD_LOG_LEVEL         - Logging level (default: INFO)
"""

import os

DATA_DIR = os.path.abspath(os.environ.get("CARD_DATA_DIR", "data"))
DB_FILE = os.environ.get("CARD_DB_FILE", os.path.join(DATA_DIR, "cards.db"))
SETTINGS_FILE = os.path.join(DATA_DIR, "settings.json")
THUMBNAILS_DIR = os.path.join(DATA_DIR, "cache", "thumbnails")

HOST = os.environ.get("CARD_HOST", "0.0.0.0")
PORT = int(os.environ.get("CARD_PORT", "8787"))

SCAN_CONCURRENCY = int(os.environ.get("CARD_SCAN_CONCURRENCY", "5"))

WATCH_FILES = os.environ.get("CARD_WATCH_FILES", "true").lower() == "true"
WATCH_POLLING = os.environ.get("CARD_WATCH_POLLING", "false").lower() == "true"
WATCH_DEBOUNCE = float(os.environ.get("CARD_WATCH_DEBOUNCE", "2.0"))
WATCH_STABILITY = float(os.environ.get("CARD_WATCH_STABILITY", "1.5"))

THUMBNAILS_ENABLED = os.environ.get("CARD_THUMBNAILS", "true").lower() == "true"
THUMBNAIL_WIDTH = int(os.environ.get("CARD_THUMBNAIL_WIDTH", "300"))

LOG_LEVEL = os.environ.get("CARD_LOG_LEVEL", "INFO").upper()

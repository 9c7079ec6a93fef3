"""Canonical data-directory paths used throughout meowrelay."""

from pathlib import Path

DATA_DIR = Path("data")
LOG_DIR = Path("logs")

HISTORY_DIR = DATA_DIR / "history"
QR_IMAGE_FILE = DATA_DIR / "qr.png"
CONFIG_FILE = Path("config.yaml")

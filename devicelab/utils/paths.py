from __future__ import annotations

from pathlib import Path


PACKAGE_DIR = Path(__file__).resolve().parent.parent
ROOT_DIR = PACKAGE_DIR.parent
DATA_DIR = ROOT_DIR / "data"
SETTINGS_DIR = DATA_DIR / "settings"
SETTINGS_FILE = SETTINGS_DIR / "devicelab.json"
LOG_DIR = DATA_DIR / "logs"

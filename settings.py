"""User settings, persisted as JSON next to the database."""

import os
import json
import logging
from dataclasses import dataclass, asdict
from typing import Optional

import config

logger = logging.getLogger(__name__)


class SettingsError(ValueError):
    """Rejected settings update."""


@dataclass
class Settings:
    cards_folder_path: Optional[str] = None


def get_settings(path: str = config.SETTINGS_FILE) -> Settings:
    """Read settings, creating the file with defaults when it does not exist."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            stored = json.load(f)
    except FileNotFoundError:
        defaults = Settings()
        _write(path, defaults)
        return defaults
    except ValueError as e:
        logger.error(f"Settings file {path} is not valid JSON, using defaults: {e}")
        return Settings()

    folder = stored.get("cards_folder_path") if isinstance(stored, dict) else None
    if folder is not None and not isinstance(folder, str):
        logger.warning(f"Ignoring non-string cards_folder_path in {path}")
        folder = None
    return Settings(cards_folder_path=folder or None)


def update_settings(settings: Settings, path: str = config.SETTINGS_FILE) -> Settings:
    """Validate and persist settings. The cards folder must exist when set."""
    folder = settings.cards_folder_path
    if folder is not None:
        folder = folder.strip()
        if not folder:
            folder = None
        elif not os.path.isdir(folder):
            raise SettingsError(f"Path does not exist or is not a folder: {folder}")

    normalized = Settings(cards_folder_path=folder)
    _write(path, normalized)
    logger.info(f"Settings saved: cards_folder_path={normalized.cards_folder_path}")
    return normalized


def _write(path: str, settings: Settings):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(asdict(settings), f, indent=2)
    os.replace(tmp_path, path)

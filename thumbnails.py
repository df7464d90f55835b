"""WebP thumbnails for card avatars."""

import os
import logging
from typing import Optional

from PIL import Image

import config

logger = logging.getLogger(__name__)


def thumbnail_path(card_id: str, thumbnails_dir: str = config.THUMBNAILS_DIR) -> str:
    return os.path.join(thumbnails_dir, f"{card_id}.webp")


def generate_thumbnail(source_path: str, card_id: str,
                       thumbnails_dir: str = config.THUMBNAILS_DIR,
                       width: int = config.THUMBNAIL_WIDTH) -> Optional[str]:
    """
    Resize a card PNG to a WebP thumbnail named after the card id.

    Returns the path relative to the data folder, or None on failure.
    """
    try:
        os.makedirs(thumbnails_dir, exist_ok=True)
        target = thumbnail_path(card_id, thumbnails_dir)
        with Image.open(source_path) as img:
            # Never enlarge, keep aspect ratio
            img.thumbnail((width, width * 4))
            if img.mode in ("RGB", "RGBA"):
                img.save(target, "WEBP", quality=80)
            else:
                with img.convert("RGBA") as converted:
                    converted.save(target, "WEBP", quality=80)
        return f"cache/thumbnails/{card_id}.webp"
    except Exception as e:
        logger.warning(f"Failed to generate thumbnail for {source_path}: {e}")
        return None


def delete_thumbnail(card_id: str, thumbnails_dir: str = config.THUMBNAILS_DIR):
    try:
        os.remove(thumbnail_path(card_id, thumbnails_dir))
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to delete thumbnail {card_id}: {e}")

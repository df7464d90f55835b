"""
Folder scanning and index reconciliation.

One scan walks a library folder, parses every PNG, deduplicates cards by
content hash and brings the index in line with what is on disk. Progress is
written to an asyncio.Queue as ScanStarted / ScanProgress events; the queue is
closed with None when the scan ends, successfully or not.
"""

import os
import json
import math
import uuid
import asyncio
import logging
import platform
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple

import config
import thumbnails
from card_hash import compute_content_hash
from card_index import CardIndexDB, CardFileRecord, TrackedFile
from card_parser import CanonicalCard, CardError, CardValidationError, parse_card_file

logger = logging.getLogger(__name__)

# Fields that end up in the prompt; notes, tags, creator, greetings and lorebook do not
PROMPT_FIELDS = (
    "description", "personality", "scenario", "first_mes",
    "mes_example", "system_prompt", "post_history_instructions",
)

HAS_TEXT_FIELDS = (
    "creator_notes", "system_prompt", "post_history_instructions",
    "personality", "scenario", "mes_example",
)


class FolderNotFound(Exception):
    """The library root folder does not exist."""


@dataclass
class ScanStarted:
    total_files: int


@dataclass
class ScanProgress:
    processed_files: int
    total_files: int


@dataclass
class ScanResult:
    """Counters for one scan."""
    total_files: int = 0
    processed_files: int = 0
    indexed: int = 0
    unchanged: int = 0
    duplicates: int = 0
    failed: int = 0
    no_metadata: int = 0
    removed_files: int = 0
    removed_cards: int = 0


@dataclass
class FileStat:
    mtime: int
    birthtime: int
    size: int


def file_birthtime_ms(st: os.stat_result) -> int:
    """Creation time in ms, 0 where the platform does not record it."""
    birthtime = getattr(st, 'st_birthtime', None)
    if birthtime is None and platform.system() == "Windows":
        birthtime = st.st_ctime
    if not birthtime or birthtime <= 0:
        return 0
    return int(birthtime * 1000)


def stat_file(filepath: str) -> FileStat:
    st = os.stat(filepath)
    mtime = st.st_mtime_ns // 1_000_000
    return FileStat(mtime=mtime, birthtime=file_birthtime_ms(st) or mtime, size=st.st_size)


def _has_text(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def estimate_prompt_tokens(card: CanonicalCard) -> int:
    """Rough token count: UTF-8 bytes of the prompt fields / 4, rounded up."""
    parts = [getattr(card, name) for name in PROMPT_FIELDS]
    text = "\n\n".join(p for p in parts if _has_text(p))
    if not text:
        return 0
    return math.ceil(len(text.encode('utf-8')) / 4)


def compute_derived_fields(card: CanonicalCard) -> Dict[str, Any]:
    """Filter columns recomputed on every write."""
    derived = {f"has_{name}": int(_has_text(getattr(card, name))) for name in HAS_TEXT_FIELDS}
    derived["has_character_book"] = int(bool(card.has_character_book))
    derived["alternate_greetings_count"] = sum(1 for g in card.alternate_greetings if g.strip())
    derived["prompt_tokens_est"] = estimate_prompt_tokens(card)
    return derived


def build_card_fields(card: CanonicalCard, content_hash: str) -> Dict[str, Any]:
    """Column values for a card row."""
    fields = {
        "content_hash": content_hash,
        "name": card.name,
        "description": card.description,
        "tags": json.dumps(card.tags, ensure_ascii=False),
        "creator": card.creator,
        "spec_version": card.spec_version,
        "data_json": json.dumps(card.original, ensure_ascii=False),
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
        "creator_notes": card.creator_notes,
        "system_prompt": card.system_prompt,
        "post_history_instructions": card.post_history_instructions,
    }
    fields.update(compute_derived_fields(card))
    return fields


def list_png_files(folder_path: str) -> List[str]:
    """All *.png files below folder_path, any depth, case-insensitive extension."""
    def on_error(error: OSError):
        logger.warning(f"Skipping unreadable path during scan: {error}")

    files = []
    for root, dirs, filenames in os.walk(folder_path, onerror=on_error):
        for filename in filenames:
            if filename.lower().endswith('.png'):
                files.append(os.path.join(root, filename))
    return files


class ScanService:
    """Reconciles one library folder against the index."""

    def __init__(self, index: CardIndexDB, concurrency: int = config.SCAN_CONCURRENCY,
                 make_thumbnails: bool = config.THUMBNAILS_ENABLED,
                 thumbnails_dir: str = config.THUMBNAILS_DIR):
        self.index = index
        self.concurrency = max(1, concurrency)
        self.make_thumbnails = make_thumbnails
        self.thumbnails_dir = thumbnails_dir

    async def scan_folder(self, folder_path: str, library_id: str,
                          events: Optional[asyncio.Queue] = None) -> ScanResult:
        """
        Walk folder_path, index every card PNG and drop entries whose files vanished.

        Raises FolderNotFound when the root is missing. Per-file problems are
        logged and counted, never raised.
        """
        try:
            if not os.path.isdir(folder_path):
                raise FolderNotFound(folder_path)

            logger.info(f"Scanning folder: {folder_path}")
            files = await asyncio.to_thread(list_png_files, folder_path)
            result = ScanResult(total_files=len(files))
            logger.info(f"Found {len(files)} PNG files")
            self._emit(events, ScanStarted(total_files=len(files)))

            semaphore = asyncio.Semaphore(self.concurrency)

            async def worker(filepath: str):
                async with semaphore:
                    status = await self._process_file_safely(filepath, library_id)
                setattr(result, status, getattr(result, status) + 1)
                result.processed_files += 1
                self._emit(events, ScanProgress(processed_files=result.processed_files,
                                                total_files=result.total_files))

            await asyncio.gather(*(worker(f) for f in files))

            await self.cleanup_deleted_files(library_id, result)

            logger.info(
                f"Scan complete: {result.processed_files} files, {result.indexed} indexed, "
                f"{result.duplicates} duplicates, {result.unchanged} unchanged, "
                f"{result.failed} failed, {result.removed_files} removed"
            )
            return result
        finally:
            if events is not None:
                events.put_nowait(None)

    def _emit(self, events: Optional[asyncio.Queue], event):
        if events is not None:
            events.put_nowait(event)

    async def _process_file_safely(self, filepath: str, library_id: str) -> str:
        try:
            return await self.process_file(filepath, library_id)
        except CardValidationError:
            # Already logged with its diagnostic classification
            return "failed"
        except CardError as e:
            logger.warning(f"Skipping {filepath}: {type(e).__name__}: {e}")
            return "failed"
        except OSError as e:
            logger.warning(f"Skipping {filepath}: {e}")
            return "failed"
        except Exception:
            logger.exception(f"Unexpected error while processing {filepath}")
            return "failed"

    async def process_file(self, filepath: str, library_id: str) -> str:
        """
        Index one PNG. Returns the ScanResult counter to bump:
        unchanged, no_metadata, duplicates or indexed.
        """
        stat = await asyncio.to_thread(stat_file, filepath)
        tracked = self.index.get_tracked_file(filepath)

        if tracked and tracked.library_id == library_id and self._is_unchanged(tracked, stat) \
                and tracked.prompt_tokens_est > 0:
            return "unchanged"

        parsed = await asyncio.to_thread(parse_card_file, filepath)
        if parsed is None:
            logger.debug(f"No card metadata in {filepath}")
            return "no_metadata"
        card, embedded = parsed

        content_hash = compute_content_hash(card.original)
        fields = build_card_fields(card, content_hash)
        record = CardFileRecord(
            file_path=filepath,
            card_id="",
            file_mtime=stat.mtime,
            file_birthtime=stat.birthtime,
            file_size=stat.size,
            folder_path=os.path.dirname(filepath),
        )

        if tracked and tracked.library_id == library_id and \
                (tracked.content_hash == content_hash or tracked.files_count == 1):
            record.card_id = await self._update_in_place(tracked, fields, stat, filepath)
            status = "indexed"
        else:
            existing_id = self.index.find_card_id_by_hash(library_id, content_hash)
            if existing_id:
                record.card_id = existing_id
                status = "duplicates"
                logger.debug(f"{filepath} duplicates card {existing_id}")
            else:
                record.card_id, inserted = await self._insert_new(library_id, fields, stat, filepath)
                status = "indexed" if inserted else "duplicates"

        self.index.attach_file(record, card.tags, created_at=stat.birthtime)
        logger.debug(f"Indexed {filepath} from {embedded.chunk} chunk as card {record.card_id}")
        return status

    def _is_unchanged(self, tracked: TrackedFile, stat: FileStat) -> bool:
        stored = tracked.file
        return (stored.file_mtime == stat.mtime
                and stored.file_birthtime == stat.birthtime
                and stored.file_size == stat.size)

    async def _thumbnail(self, filepath: str, card_id: str) -> Optional[str]:
        if not self.make_thumbnails:
            return None
        return await asyncio.to_thread(thumbnails.generate_thumbnail, filepath, card_id, self.thumbnails_dir)

    async def _insert_new(self, library_id: str, fields: Dict[str, Any], stat: FileStat, filepath: str) -> Tuple[str, bool]:
        new_id = str(uuid.uuid4())
        avatar_path = await self._thumbnail(filepath, new_id)
        card_id, inserted = self.index.insert_card_or_get_existing(
            new_id, library_id, fields, created_at=stat.birthtime, avatar_path=avatar_path
        )
        if not inserted:
            # Lost the race for this content hash, adopt the winner
            if avatar_path:
                thumbnails.delete_thumbnail(new_id, self.thumbnails_dir)
            logger.debug(f"{filepath} joined card {card_id} created concurrently")
        return card_id, inserted

    async def _update_in_place(self, tracked: TrackedFile, fields: Dict[str, Any],
                               stat: FileStat, filepath: str) -> str:
        card_id = tracked.file.card_id
        if tracked.content_hash == fields["content_hash"] and tracked.prompt_tokens_est == fields["prompt_tokens_est"]:
            return card_id

        avatar_path = None
        if not tracked.avatar_path:
            avatar_path = await self._thumbnail(filepath, card_id)

        if self.index.update_card(card_id, fields, created_at=stat.birthtime, avatar_path=avatar_path):
            return card_id

        # The edited file now matches another card: move it there and drop the old card
        winner = self.index.find_card_id_by_hash(tracked.library_id, fields["content_hash"])
        if winner is None:
            raise RuntimeError(f"Hash conflict for {filepath} but no owning card found")
        logger.info(f"{filepath} now duplicates card {winner}, merging")
        self.index.delete_card(card_id)
        thumbnails.delete_thumbnail(card_id, self.thumbnails_dir)
        return winner

    async def cleanup_deleted_files(self, library_id: str, result: Optional[ScanResult] = None):
        """Drop file rows whose files are gone, then any cards left without files."""
        stored = self.index.list_library_files(library_id)
        missing = await asyncio.to_thread(
            lambda: [f.file_path for f in stored if not os.path.exists(f.file_path)]
        )
        if missing:
            logger.info(f"Removing {len(missing)} files no longer on disk...")

        removed_cards = []
        for path in missing:
            deleted = self.index.remove_card_file(path)
            if deleted:
                removed_cards.append(deleted)

        orphans = self.index.delete_orphan_cards(library_id)
        if orphans:
            logger.warning(f"Removed {len(orphans)} cards without backing files")
        removed_cards.extend(orphans)

        for card in removed_cards:
            if card.get("avatar_path"):
                thumbnails.delete_thumbnail(card["id"], self.thumbnails_dir)

        if result is not None:
            result.removed_files = len(missing)
            result.removed_cards = len(removed_cards)


def delete_card_file(index: CardIndexDB, file_path: str, delete_from_disk: bool = False,
                     thumbnails_dir: str = config.THUMBNAILS_DIR) -> Optional[Dict[str, Any]]:
    """
    Remove one backing file of a card, e.g. a duplicate copy.

    Returns the deleted card when this was its last file.
    """
    if delete_from_disk and os.path.exists(file_path):
        os.remove(file_path)
        logger.info(f"Deleted from disk: {file_path}")
    deleted = index.remove_card_file(file_path)
    if deleted:
        logger.info(f"Card {deleted['id']} removed with its last file")
        if deleted.get("avatar_path"):
            thumbnails.delete_thumbnail(deleted["id"], thumbnails_dir)
    return deleted

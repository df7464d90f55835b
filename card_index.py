"""
Persistent card index - SQLite Edition.

Stores deduplicated cards, the physical files backing them, tags and the
libraries (watched root folders) that scope everything. All writes go through
one lock so concurrent scan workers never interleave transactions.
"""

import os
import json
import uuid
import time
import sqlite3
import logging
import threading
from dataclasses import dataclass, field
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Tuple, Iterable

import config

logger = logging.getLogger(__name__)

# Columns written on every card insert/update, in statement order
CARD_COLUMNS = (
    "content_hash", "name", "description", "tags", "creator", "spec_version",
    "data_json", "personality", "scenario", "first_mes", "mes_example",
    "creator_notes", "system_prompt", "post_history_instructions",
    "alternate_greetings_count", "has_creator_notes", "has_system_prompt",
    "has_post_history_instructions", "has_personality", "has_scenario",
    "has_mes_example", "has_character_book", "prompt_tokens_est",
)

HAS_FLAG_COLUMNS = (
    "has_creator_notes", "has_system_prompt", "has_post_history_instructions",
    "has_personality", "has_scenario", "has_mes_example", "has_character_book",
)

SORT_ORDERS = {
    "created_at_desc": "c.created_at DESC, c.id",
    "created_at_asc": "c.created_at ASC, c.id",
    "name_asc": "CASE WHEN c.name IS NULL OR c.name = '' THEN 1 ELSE 0 END, LOWER(c.name) ASC, c.id",
    "name_desc": "CASE WHEN c.name IS NULL OR c.name = '' THEN 1 ELSE 0 END, LOWER(c.name) DESC, c.id",
    "prompt_tokens_asc": "c.prompt_tokens_est ASC, c.id",
    "prompt_tokens_desc": "c.prompt_tokens_est DESC, c.id",
}

PRIMARY_FILE_SQL = """
    COALESCE(c.primary_file_path, (
        SELECT cf.file_path FROM card_files cf
        WHERE cf.card_id = c.id
        ORDER BY cf.file_birthtime ASC, cf.file_path ASC LIMIT 1
    ))
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_folder_path(folder_path: str) -> str:
    """Absolute, normalized folder path; case-folded on Windows."""
    resolved = os.path.normpath(os.path.abspath(folder_path.strip()))
    return os.path.normcase(resolved)


def normalize_tag_name(name: str) -> str:
    return name.strip().lower()


@dataclass
class CardFileRecord:
    """One physical file backing a card."""
    file_path: str
    card_id: str
    file_mtime: int
    file_birthtime: int
    file_size: int
    folder_path: Optional[str] = None


@dataclass
class TrackedFile:
    """Stored state of a file plus the card fields the scanner needs to decide on a skip."""
    file: CardFileRecord
    content_hash: str
    prompt_tokens_est: int
    avatar_path: Optional[str]
    library_id: str
    files_count: int


@dataclass
class CardSummary:
    """List view of a card."""
    id: str
    name: Optional[str]
    tags: List[str]
    creator: Optional[str]
    spec_version: Optional[str]
    created_at: int
    avatar_url: str
    file_path: Optional[str]
    files_count: int
    prompt_tokens_est: int
    alternate_greetings_count: int
    has_character_book: bool = False
    flags: Dict[str, bool] = field(default_factory=dict)


class CardIndexDB:
    """SQLite-based card index."""

    def __init__(self, db_path: str = config.DB_FILE):
        self.db_path = db_path
        self.lock = threading.RLock()
        self._local = threading.local()

        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    @contextmanager
    def _cursor(self):
        """Context manager for a database cursor; one transaction per block."""
        with self.lock:
            conn = self._get_conn()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def close(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, column_def: str):
        """SQLite has no ADD COLUMN IF NOT EXISTS, check PRAGMA table_info first."""
        cur.execute(f"PRAGMA table_info({table})")
        columns = [row[1] for row in cur.fetchall()]
        if column not in columns:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_def}")
            logger.info(f"Added '{column}' column to {table} table")

    def _init_db(self):
        """Initialize database schema and migrate older databases."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        with self._cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS libraries (
                    id TEXT PRIMARY KEY,
                    folder_path TEXT UNIQUE NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS cards (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    description TEXT,
                    tags TEXT,
                    creator TEXT,
                    spec_version TEXT,
                    avatar_path TEXT,
                    created_at INTEGER NOT NULL,
                    data_json TEXT NOT NULL
                )
            """)

            # Columns added after the first release
            self._add_column_if_missing(cur, "cards", "library_id", "TEXT")
            self._add_column_if_missing(cur, "cards", "content_hash", "TEXT")
            self._add_column_if_missing(cur, "cards", "updated_at", "INTEGER NOT NULL DEFAULT 0")
            for column in ("personality", "scenario", "first_mes", "mes_example", "creator_notes",
                           "system_prompt", "post_history_instructions", "primary_file_path"):
                self._add_column_if_missing(cur, "cards", column, "TEXT")
            self._add_column_if_missing(cur, "cards", "alternate_greetings_count", "INTEGER NOT NULL DEFAULT 0")
            for column in HAS_FLAG_COLUMNS:
                self._add_column_if_missing(cur, "cards", column, "INTEGER NOT NULL DEFAULT 0")
            self._add_column_if_missing(cur, "cards", "prompt_tokens_est", "INTEGER NOT NULL DEFAULT 0")

            cur.execute("""
                CREATE TABLE IF NOT EXISTS card_files (
                    file_path TEXT PRIMARY KEY,
                    card_id TEXT NOT NULL,
                    file_mtime INTEGER NOT NULL,
                    file_size INTEGER NOT NULL,
                    FOREIGN KEY (card_id) REFERENCES cards(id) ON DELETE CASCADE
                )
            """)
            self._add_column_if_missing(cur, "card_files", "folder_path", "TEXT")
            self._add_column_if_missing(cur, "card_files", "file_birthtime", "INTEGER NOT NULL DEFAULT 0")

            cur.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    rawName TEXT NOT NULL UNIQUE
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS card_tags (
                    card_id TEXT NOT NULL,
                    tag_rawName TEXT NOT NULL,
                    PRIMARY KEY (card_id, tag_rawName),
                    FOREIGN KEY (card_id) REFERENCES cards(id) ON DELETE CASCADE,
                    FOREIGN KEY (tag_rawName) REFERENCES tags(rawName) ON DELETE CASCADE
                )
            """)

            # Indexes for fast lookups and filters
            cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_cards_library_hash ON cards(library_id, content_hash)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_name ON cards(name)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_created_at ON cards(created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_creator ON cards(creator)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_spec_version ON cards(spec_version)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_cards_alternate_greetings_count ON cards(alternate_greetings_count)")
            for column in HAS_FLAG_COLUMNS:
                cur.execute(f"CREATE INDEX IF NOT EXISTS idx_cards_{column} ON cards({column})")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_card_files_card_id ON card_files(card_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_card_files_folder_path ON card_files(folder_path)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_card_tags_tag_rawName ON card_tags(tag_rawName)")

        logger.info(f"Database initialized at {self.db_path}")

    # ===== LIBRARIES =====

    def get_library_id(self, folder_path: str) -> Optional[str]:
        key = normalize_folder_path(folder_path)
        with self._cursor() as cur:
            cur.execute("SELECT id FROM libraries WHERE folder_path = ? LIMIT 1", (key,))
            row = cur.fetchone()
            return row[0] if row else None

    def get_or_create_library(self, folder_path: str) -> str:
        """Look up the library for a folder, creating it on first use."""
        existing = self.get_library_id(folder_path)
        if existing:
            return existing

        key = normalize_folder_path(folder_path)
        library_id = str(uuid.uuid4())
        now = now_ms()
        try:
            with self._cursor() as cur:
                cur.execute(
                    "INSERT INTO libraries (id, folder_path, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (library_id, key, now, now)
                )
            logger.info(f"Created library {library_id} for {key}")
            return library_id
        except sqlite3.IntegrityError:
            # Another caller inserted the same folder first
            winner = self.get_library_id(folder_path)
            if winner:
                return winner
            raise

    # ===== SCAN SUPPORT =====

    def get_tracked_file(self, file_path: str) -> Optional[TrackedFile]:
        """Stored state of a file path, with its card's hash and token estimate."""
        with self._cursor() as cur:
            cur.execute("""
                SELECT cf.*, c.content_hash, c.prompt_tokens_est, c.avatar_path, c.library_id,
                       (SELECT COUNT(*) FROM card_files other WHERE other.card_id = cf.card_id) AS files_count
                FROM card_files cf
                JOIN cards c ON c.id = cf.card_id
                WHERE cf.file_path = ?
            """, (file_path,))
            row = cur.fetchone()
        if not row:
            return None
        return TrackedFile(
            file=self._row_to_file(row),
            content_hash=row['content_hash'] or '',
            prompt_tokens_est=row['prompt_tokens_est'] or 0,
            avatar_path=row['avatar_path'],
            library_id=row['library_id'],
            files_count=row['files_count'],
        )

    def find_card_id_by_hash(self, library_id: str, content_hash: str) -> Optional[str]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id FROM cards WHERE library_id = ? AND content_hash = ? LIMIT 1",
                (library_id, content_hash)
            )
            row = cur.fetchone()
            return row[0] if row else None

    def insert_card_or_get_existing(self, card_id: str, library_id: str, fields: Dict[str, Any],
                                    created_at: int, avatar_path: Optional[str]) -> Tuple[str, bool]:
        """
        Insert a new card, or return the card that already owns its content hash.

        Returns (card_id, inserted). When a concurrent insert of the same
        (library_id, content_hash) won, the winner's id comes back with
        inserted=False and nothing is written.
        """
        columns = ("id", "library_id", "avatar_path", "created_at", "updated_at") + CARD_COLUMNS
        values = [card_id, library_id, avatar_path, created_at, now_ms()] + [fields[c] for c in CARD_COLUMNS]
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._cursor() as cur:
                cur.execute(f"INSERT INTO cards ({', '.join(columns)}) VALUES ({placeholders})", values)
            return card_id, True
        except sqlite3.IntegrityError:
            winner = self.find_card_id_by_hash(library_id, fields["content_hash"])
            if winner is None:
                raise
            logger.debug(f"Hash {fields['content_hash'][:12]} already owned by card {winner}")
            return winner, False

    def update_card(self, card_id: str, fields: Dict[str, Any], created_at: int,
                    avatar_path: Optional[str] = None) -> bool:
        """
        Rewrite a card's content in place.

        created_at only ever moves backwards. Returns False, writing nothing,
        when the new content hash already belongs to another card of the library.
        """
        assignments = ", ".join(f"{c} = ?" for c in CARD_COLUMNS)
        values = [fields[c] for c in CARD_COLUMNS]
        try:
            with self._cursor() as cur:
                cur.execute(f"""
                    UPDATE cards SET {assignments},
                        created_at = CASE WHEN created_at > 0 AND created_at <= ? THEN created_at ELSE ? END,
                        avatar_path = COALESCE(?, avatar_path),
                        updated_at = ?
                    WHERE id = ?
                """, values + [created_at, created_at, avatar_path, now_ms(), card_id])
            return True
        except sqlite3.IntegrityError:
            return False

    def attach_file(self, record: CardFileRecord, tags: Iterable[str], created_at: int):
        """
        Upsert a card file and rewrite its card's tag links.

        Also pulls the card's created_at back to this file's time when older.
        A file moving over from another card no longer counts as that card's
        pinned primary file.
        """
        tags = [t for t in tags if isinstance(t, str) and t.strip()]
        with self._cursor() as cur:
            cur.execute("SELECT card_id FROM card_files WHERE file_path = ?", (record.file_path,))
            previous = cur.fetchone()
            if previous and previous[0] != record.card_id:
                cur.execute(
                    "UPDATE cards SET primary_file_path = NULL WHERE id = ? AND primary_file_path = ?",
                    (previous[0], record.file_path)
                )

            cur.execute("""
                INSERT INTO card_files (file_path, card_id, file_mtime, file_birthtime, file_size, folder_path)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    card_id = excluded.card_id,
                    file_mtime = excluded.file_mtime,
                    file_birthtime = excluded.file_birthtime,
                    file_size = excluded.file_size,
                    folder_path = excluded.folder_path
            """, (record.file_path, record.card_id, record.file_mtime, record.file_birthtime,
                  record.file_size, record.folder_path))

            cur.execute(
                "UPDATE cards SET created_at = ? WHERE id = ? AND (created_at > ? OR created_at <= 0)",
                (created_at, record.card_id, created_at)
            )

            self._ensure_tags_exist(cur, tags)
            cur.execute("DELETE FROM card_tags WHERE card_id = ?", (record.card_id,))
            cur.executemany(
                "INSERT OR IGNORE INTO card_tags (card_id, tag_rawName) VALUES (?, ?)",
                [(record.card_id, normalize_tag_name(t)) for t in tags]
            )

    def _ensure_tags_exist(self, cur: sqlite3.Cursor, tags: Iterable[str]):
        """Create missing tags; the first spelling seen becomes the display name."""
        for tag in tags:
            cur.execute(
                "INSERT OR IGNORE INTO tags (id, name, rawName) VALUES (?, ?, ?)",
                (str(uuid.uuid4()), tag.strip(), normalize_tag_name(tag))
            )

    def ensure_tags_exist(self, tags: Iterable[str]):
        with self._cursor() as cur:
            self._ensure_tags_exist(cur, [t for t in tags if isinstance(t, str) and t.strip()])

    def list_library_files(self, library_id: str) -> List[CardFileRecord]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT cf.* FROM card_files cf
                JOIN cards c ON c.id = cf.card_id
                WHERE c.library_id = ?
            """, (library_id,))
            return [self._row_to_file(row) for row in cur.fetchall()]

    def remove_card_file(self, file_path: str) -> Optional[Dict[str, Any]]:
        """
        Delete a file row. When it was the card's last file the card goes too.

        Returns {"id", "avatar_path"} of a card deleted this way, else None.
        """
        with self._cursor() as cur:
            cur.execute("SELECT card_id FROM card_files WHERE file_path = ?", (file_path,))
            row = cur.fetchone()
            if not row:
                return None
            card_id = row[0]

            cur.execute("DELETE FROM card_files WHERE file_path = ?", (file_path,))
            cur.execute(
                "UPDATE cards SET primary_file_path = NULL WHERE id = ? AND primary_file_path = ?",
                (card_id, file_path)
            )

            cur.execute("SELECT COUNT(*) FROM card_files WHERE card_id = ?", (card_id,))
            if cur.fetchone()[0] > 0:
                return None

            cur.execute("SELECT avatar_path FROM cards WHERE id = ?", (card_id,))
            card = cur.fetchone()
            cur.execute("DELETE FROM cards WHERE id = ?", (card_id,))
            return {"id": card_id, "avatar_path": card[0] if card else None}

    def delete_orphan_cards(self, library_id: str) -> List[Dict[str, Any]]:
        """Delete cards of the library that have no backing files left."""
        with self._cursor() as cur:
            cur.execute("""
                SELECT id, avatar_path FROM cards c
                WHERE c.library_id = ?
                  AND NOT EXISTS (SELECT 1 FROM card_files cf WHERE cf.card_id = c.id)
            """, (library_id,))
            orphans = [{"id": row[0], "avatar_path": row[1]} for row in cur.fetchall()]
            cur.executemany("DELETE FROM cards WHERE id = ?", [(o["id"],) for o in orphans])
        return orphans

    def delete_card(self, card_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute("DELETE FROM cards WHERE id = ?", (card_id,))
            return cur.rowcount > 0

    # ===== QUERIES =====

    def _row_to_file(self, row: sqlite3.Row) -> CardFileRecord:
        return CardFileRecord(
            file_path=row['file_path'],
            card_id=row['card_id'],
            file_mtime=row['file_mtime'],
            file_birthtime=row['file_birthtime'],
            file_size=row['file_size'],
            folder_path=row['folder_path'],
        )

    def _row_to_summary(self, row: sqlite3.Row) -> CardSummary:
        try:
            tags = json.loads(row['tags']) if row['tags'] else []
        except ValueError:
            tags = []
        return CardSummary(
            id=row['id'],
            name=row['name'],
            tags=tags,
            creator=row['creator'],
            spec_version=row['spec_version'],
            created_at=row['created_at'],
            avatar_url=f"/api/thumbnail/{row['id']}" if row['avatar_path'] else "/api/thumbnail/default",
            file_path=row['primary_path'],
            files_count=row['files_count'],
            prompt_tokens_est=row['prompt_tokens_est'],
            alternate_greetings_count=row['alternate_greetings_count'],
            has_character_book=bool(row['has_character_book']),
            flags={column: bool(row[column]) for column in HAS_FLAG_COLUMNS},
        )

    def count_cards(self, library_id: Optional[str] = None) -> int:
        with self._cursor() as cur:
            if library_id is None:
                cur.execute("SELECT COUNT(*) FROM cards")
            else:
                cur.execute("SELECT COUNT(*) FROM cards WHERE library_id = ?", (library_id,))
            return cur.fetchone()[0]

    def card_ids(self, library_id: str) -> set:
        with self._cursor() as cur:
            cur.execute("SELECT id FROM cards WHERE library_id = ?", (library_id,))
            return {row[0] for row in cur.fetchall()}

    def count_card_files(self, library_id: Optional[str] = None) -> int:
        with self._cursor() as cur:
            if library_id is None:
                cur.execute("SELECT COUNT(*) FROM card_files")
            else:
                cur.execute("""
                    SELECT COUNT(*) FROM card_files cf JOIN cards c ON c.id = cf.card_id
                    WHERE c.library_id = ?
                """, (library_id,))
            return cur.fetchone()[0]

    def search_cards(
        self,
        library_id: str,
        query: Optional[str] = None,
        tags: Optional[List[str]] = None,
        creator: Optional[str] = None,
        spec_versions: Optional[List[str]] = None,
        flags: Optional[Dict[str, bool]] = None,
        min_alternate_greetings: Optional[int] = None,
        sort: str = "created_at_desc",
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[CardSummary], int]:
        """Search one library's cards with filters on the denormalized columns."""
        conditions = ["c.library_id = ?"]
        params: List[Any] = [library_id]

        if query:
            like = f"%{query.strip()}%"
            conditions.append("(c.name LIKE ? OR c.description LIKE ? OR c.creator LIKE ?)")
            params.extend([like, like, like])

        # Every requested tag must be linked
        for tag in tags or []:
            conditions.append("EXISTS (SELECT 1 FROM card_tags ct WHERE ct.card_id = c.id AND ct.tag_rawName = ?)")
            params.append(normalize_tag_name(tag))

        if creator:
            conditions.append("c.creator = ?")
            params.append(creator)

        if spec_versions:
            conditions.append(f"c.spec_version IN ({', '.join('?' for _ in spec_versions)})")
            params.extend(spec_versions)

        for column, wanted in (flags or {}).items():
            if column not in HAS_FLAG_COLUMNS:
                raise ValueError(f"Unknown filter flag: {column}")
            conditions.append(f"c.{column} = ?")
            params.append(int(wanted))

        if min_alternate_greetings is not None:
            conditions.append("c.alternate_greetings_count >= ?")
            params.append(min_alternate_greetings)

        if sort not in SORT_ORDERS:
            raise ValueError(f"Unknown sort order: {sort}")

        where_clause = " AND ".join(conditions)

        with self._cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM cards c WHERE {where_clause}", params)
            total = cur.fetchone()[0]

            cur.execute(f"""
                SELECT c.*, {PRIMARY_FILE_SQL} AS primary_path,
                       (SELECT COUNT(*) FROM card_files cf WHERE cf.card_id = c.id) AS files_count
                FROM cards c
                WHERE {where_clause}
                ORDER BY {SORT_ORDERS[sort]}
                LIMIT ? OFFSET ?
            """, params + [limit, offset])
            results = [self._row_to_summary(row) for row in cur.fetchall()]

        return results, total

    def get_card(self, card_id: str) -> Optional[Dict[str, Any]]:
        """Full card row with its files and the resolved primary file."""
        with self._cursor() as cur:
            cur.execute(f"SELECT c.*, {PRIMARY_FILE_SQL} AS primary_path FROM cards c WHERE c.id = ?", (card_id,))
            row = cur.fetchone()
            if not row:
                return None
            cur.execute(
                "SELECT * FROM card_files WHERE card_id = ? ORDER BY file_birthtime ASC, file_path ASC",
                (card_id,)
            )
            files = [self._row_to_file(f) for f in cur.fetchall()]

        card = {key: row[key] for key in row.keys() if key not in ("data_json", "primary_path")}
        card["tags"] = json.loads(row['tags']) if row['tags'] else []
        for column in HAS_FLAG_COLUMNS:
            card[column] = bool(card[column])
        card["data"] = json.loads(row['data_json'])
        card["resolved_primary_file_path"] = row['primary_path']
        card["files"] = files
        return card

    def get_card_data_json(self, card_id: str) -> Optional[str]:
        """Original decoded card JSON, verbatim."""
        with self._cursor() as cur:
            cur.execute("SELECT data_json FROM cards WHERE id = ?", (card_id,))
            row = cur.fetchone()
            return row[0] if row else None

    def get_card_files(self, card_id: str) -> List[CardFileRecord]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM card_files WHERE card_id = ? ORDER BY file_birthtime ASC, file_path ASC",
                (card_id,)
            )
            return [self._row_to_file(row) for row in cur.fetchall()]

    def get_filters(self, library_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Filter options with card counts for one library."""
        with self._cursor() as cur:
            cur.execute("""
                SELECT creator AS value, COUNT(*) AS count FROM cards
                WHERE library_id = ? AND creator IS NOT NULL AND TRIM(creator) != ''
                GROUP BY creator ORDER BY count DESC, value COLLATE NOCASE ASC
            """, (library_id,))
            creators = [dict(row) for row in cur.fetchall()]

            cur.execute("""
                SELECT spec_version AS value, COUNT(*) AS count FROM cards
                WHERE library_id = ? AND spec_version IS NOT NULL
                GROUP BY spec_version ORDER BY count DESC, value ASC
            """, (library_id,))
            spec_versions = [dict(row) for row in cur.fetchall()]

            # Tags are global; counts are scoped to the library
            cur.execute("""
                SELECT t.name AS value, COUNT(c.id) AS count
                FROM tags t
                LEFT JOIN card_tags ct ON ct.tag_rawName = t.rawName
                LEFT JOIN cards c ON c.id = ct.card_id AND c.library_id = ?
                GROUP BY t.rawName, t.name
                ORDER BY count DESC, value COLLATE NOCASE ASC
            """, (library_id,))
            tags = [dict(row) for row in cur.fetchall()]

        return {"creators": creators, "spec_versions": spec_versions, "tags": tags}

    def get_all_tags(self) -> List[Dict[str, str]]:
        with self._cursor() as cur:
            cur.execute("SELECT id, name, rawName FROM tags ORDER BY name ASC")
            return [dict(row) for row in cur.fetchall()]

    def get_card_tag_names(self, card_id: str) -> List[str]:
        with self._cursor() as cur:
            cur.execute("SELECT tag_rawName FROM card_tags WHERE card_id = ? ORDER BY tag_rawName", (card_id,))
            return [row[0] for row in cur.fetchall()]

    # ===== DUPLICATES =====

    def list_duplicate_groups(self, library_id: str) -> List[Dict[str, Any]]:
        """Cards backed by more than one physical file."""
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT c.id, c.name, {PRIMARY_FILE_SQL} AS primary_path
                FROM cards c
                WHERE c.library_id = ?
                  AND (SELECT COUNT(*) FROM card_files cf WHERE cf.card_id = c.id) > 1
                ORDER BY LOWER(c.name) ASC, c.id
            """, (library_id,))
            groups = [dict(row) for row in cur.fetchall()]

        for group in groups:
            group["files"] = self.get_card_files(group["id"])
        return groups

    def set_primary_file(self, card_id: str, file_path: Optional[str]) -> bool:
        """Pin which backing file is authoritative; None returns to automatic choice."""
        with self._cursor() as cur:
            if file_path is not None:
                cur.execute(
                    "SELECT 1 FROM card_files WHERE card_id = ? AND file_path = ?",
                    (card_id, file_path)
                )
                if cur.fetchone() is None:
                    return False
            cur.execute(
                "UPDATE cards SET primary_file_path = ?, updated_at = ? WHERE id = ?",
                (file_path, now_ms(), card_id)
            )
            return cur.rowcount > 0

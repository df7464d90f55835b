# tests/conftest.py

import base64
import json
import struct
import zlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from card_hash import compute_content_hash
from card_index import CardIndexDB
from card_parser import PNG_SIGNATURE, extract_card
from scanner import build_card_fields

ChunkSpec = Tuple[str, Union[bytes, Any]]


def png_chunk(chunk_type: bytes, payload: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + payload) & 0xffffffff
    return struct.pack('>I', len(payload)) + chunk_type + payload + struct.pack('>I', crc)


def build_png(text_chunks: Optional[List[ChunkSpec]] = None) -> bytes:
    """
    A real 1x1 RGB PNG with the given tEXt chunks before the image data.

    Each chunk is (keyword, value). Bytes values are written as the raw
    payload; anything else is JSON encoded and base64'd the way card
    exporters do it.
    """
    ihdr = struct.pack('>IIBBBBB', 1, 1, 8, 2, 0, 0, 0)
    idat = zlib.compress(b'\x00\xff\x80\x00')

    out = PNG_SIGNATURE + png_chunk(b'IHDR', ihdr)
    for keyword, value in text_chunks or []:
        if isinstance(value, bytes):
            payload = value
        else:
            payload = base64.b64encode(json.dumps(value).encode('utf-8'))
        out += png_chunk(b'tEXt', keyword.encode('latin-1') + b'\x00' + payload)
    out += png_chunk(b'IDAT', idat)
    out += png_chunk(b'IEND', b'')
    return out


def v1_card(name: str = "Alice", **overrides) -> Dict[str, Any]:
    card = {
        "name": name,
        "description": f"{name} is a librarian who never forgets a book.",
        "personality": "curious, patient",
        "scenario": "A quiet reading room.",
        "first_mes": f"Hello, I am {name}.",
        "mes_example": "<START>\n{{user}}: Hi\n{{char}}: Welcome!",
    }
    card.update(overrides)
    return card


def v2_card(name: str = "Carol", **data_overrides) -> Dict[str, Any]:
    data = {
        "name": name,
        "description": f"{name} runs the night market.",
        "personality": "",
        "scenario": "",
        "first_mes": "Looking for something?",
        "mes_example": "",
        "creator_notes": "",
        "system_prompt": "",
        "post_history_instructions": "",
        "alternate_greetings": ["Back again?", "  "],
        "tags": ["Fantasy", "Merchant"],
        "creator": "someone",
        "character_version": "1.0",
        "extensions": {},
    }
    data.update(data_overrides)
    return {"spec": "chara_card_v2", "spec_version": "2.0", "data": data}


def v3_card(name: str = "Bob", spec_version: Any = "3.0", **data_overrides) -> Dict[str, Any]:
    data = {
        "name": name,
        "description": f"{name} is a retired starship pilot.",
        "personality": "gruff",
        "scenario": "A dockside bar.",
        "first_mes": "What do you want?",
        "mes_example": "",
        "creator": "pilotfan",
        "creator_notes": "Best with long replies.",
        "system_prompt": "",
        "post_history_instructions": "",
        "alternate_greetings": ["Another round?"],
        "group_only_greetings": ["Everyone, quiet."],
        "tags": ["Sci-Fi"],
        "character_version": "2",
        "extensions": {},
        "creation_date": 1700000000,
        "modification_date": 1700000500,
    }
    data.update(data_overrides)
    return {"spec": "chara_card_v3", "spec_version": spec_version, "data": data}


def card_fields(card: Dict[str, Any], version: int) -> Dict[str, Any]:
    """Column values for a card, as the scanner would write them."""
    return build_card_fields(extract_card(card, version), compute_content_hash(card))


@pytest.fixture
def index(tmp_path):
    db = CardIndexDB(str(tmp_path / "db" / "cards.db"))
    yield db
    db.close()


@pytest.fixture
def cards_dir(tmp_path):
    folder = tmp_path / "cards"
    folder.mkdir()
    return folder


@pytest.fixture
def write_png():
    """Write a card PNG and return its path as a string."""
    def _write(path, text_chunks: Optional[List[ChunkSpec]] = None) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_png(text_chunks))
        return str(path)
    return _write

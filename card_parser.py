"""
Character card parsing.

Reads the embedded persona metadata out of a PNG's text chunks, classifies it
as one of the three card schema generations and normalizes it into a single
flat record.

Two chunk keywords carry card data:
  ccv3   - written by V3 exporters, preferred when present
  chara  - legacy keyword, also written by V3 exporters for compatibility
"""

import base64
import binascii
import json
import logging
import math
import struct
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'

# Keywords in priority order
CARD_CHUNK_KEYWORDS = ("ccv3", "chara")
TEXT_CHUNK_TYPE = b'tEXt'

V1_REQUIRED_FIELDS = ("name", "description", "personality", "scenario", "first_mes", "mes_example")
V2_REQUIRED_STRING_FIELDS = ("name", "description", "first_mes", "mes_example", "creator", "character_version")
V2_OPTIONAL_STRING_FIELDS = ("personality", "scenario", "creator_notes", "system_prompt", "post_history_instructions")

SPEC_VERSION_LABELS = {1: "1.0", 2: "2.0", 3: "3.0"}


class CardError(Exception):
    """Base class for per-file card errors."""


class InvalidFormat(CardError):
    """File is not a PNG or its chunk stream is truncated."""


class MetadataDecodeError(CardError):
    """A card chunk was found but its payload is not base64 JSON."""


class CardValidationError(CardError):
    """Decoded JSON matches none of the known card schemas."""

    def __init__(self, kind: str, detail: str):
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail


class ExtractionError(CardError):
    """Schema shape was valid but a field could not be normalized."""


@dataclass
class EmbeddedMetadata:
    """Decoded card JSON and where it came from."""
    data: Any
    chunk: str
    detected_version: Optional[int]


@dataclass
class CanonicalCard:
    """Card fields normalized across schema versions."""
    name: Optional[str]
    description: Optional[str]
    personality: Optional[str]
    scenario: Optional[str]
    first_mes: Optional[str]
    mes_example: Optional[str]
    creator: Optional[str]
    creator_notes: Optional[str]
    system_prompt: Optional[str]
    post_history_instructions: Optional[str]
    tags: List[str]
    spec_version: str
    alternate_greetings: List[str]
    group_only_greetings: Optional[List[str]]
    has_character_book: bool
    original: Any = field(repr=False, default=None)


# ===== PNG CHUNK WALKING =====

def read_text_chunks(data: bytes) -> Dict[str, List[bytes]]:
    """
    Walk the PNG chunk stream and collect the payloads of card text chunks.

    Returns a mapping of keyword -> list of raw (still base64) payloads in
    file order. Raises InvalidFormat when the signature is missing or a chunk
    is truncated before any card chunk was seen.
    """
    if len(data) < len(PNG_SIGNATURE) or data[:8] != PNG_SIGNATURE:
        raise InvalidFormat("missing PNG signature")

    found: Dict[str, List[bytes]] = {}
    pos = 8
    while pos + 8 <= len(data):
        length, chunk_type = struct.unpack('>I4s', data[pos:pos + 8])

        if chunk_type == b'IEND':
            break

        end = pos + 8 + length
        if end + 4 > len(data):
            if not found:
                raise InvalidFormat(f"truncated {chunk_type!r} chunk at offset {pos}")
            logger.debug(f"Truncated {chunk_type!r} chunk at offset {pos}, keeping earlier card chunks")
            break

        if chunk_type == TEXT_CHUNK_TYPE:
            chunk_data = data[pos + 8:end]
            null_pos = chunk_data.find(b'\x00')
            if null_pos > 0:
                keyword = chunk_data[:null_pos].decode('latin-1')
                if keyword in CARD_CHUNK_KEYWORDS:
                    found.setdefault(keyword, []).append(chunk_data[null_pos + 1:])

        # Skip payload and CRC
        pos = end + 4

    return found


def decode_chunk_payload(payload: bytes) -> Any:
    """Decode a base64 JSON chunk payload."""
    try:
        text = base64.b64decode(payload).decode('utf-8')
        return json.loads(text)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MetadataDecodeError(str(e)) from e


def detect_spec_version(card: Any) -> Optional[int]:
    """Guess the schema generation from marker fields without validating."""
    if not isinstance(card, dict):
        return None
    spec = card.get("spec")
    if spec == "chara_card_v3":
        return 3
    if spec == "chara_card_v2":
        return 2
    if all(key in card for key in V1_REQUIRED_FIELDS):
        return 1
    return None


def parse_png_metadata(filepath: str) -> Optional[EmbeddedMetadata]:
    """
    Extract embedded card JSON from a PNG file.

    The ccv3 chunk wins when it decodes; the chara chunk is the fallback.
    Returns None when the PNG has no card chunks at all.
    """
    with open(filepath, 'rb') as f:
        data = f.read()

    chunks = read_text_chunks(data)
    if not chunks:
        return None

    last_error: Optional[MetadataDecodeError] = None
    for keyword in CARD_CHUNK_KEYWORDS:
        for payload in chunks.get(keyword, []):
            try:
                decoded = decode_chunk_payload(payload)
            except MetadataDecodeError as e:
                logger.debug(f"Undecodable {keyword} chunk in {filepath}: {e}")
                last_error = e
                continue
            return EmbeddedMetadata(data=decoded, chunk=keyword, detected_version=detect_spec_version(decoded))

    raise MetadataDecodeError(f"no decodable card chunk ({last_error})")


# ===== SCHEMA VALIDATION =====

def _is_string(value: Any) -> bool:
    return isinstance(value, str)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_v3(card: Dict[str, Any]) -> Optional[str]:
    if card.get("spec") != "chara_card_v3":
        return "spec must be 'chara_card_v3'"

    spec_version = card.get("spec_version")
    if not _is_string(spec_version) and not _is_number(spec_version):
        return "spec_version must be a string or number"
    try:
        version_number = float(spec_version)
    except ValueError:
        return "spec_version must be a valid number"
    if math.isnan(version_number):
        return "spec_version must be a valid number"
    if version_number < 3.0 or version_number >= 4.0:
        return "spec_version must be >= 3.0 and < 4.0"

    if not isinstance(card.get("data"), dict):
        return "data object is required"
    return None


def _check_character_book(book: Any) -> Optional[str]:
    if not isinstance(book, dict):
        return "data.character_book must be an object if present"
    for key in ("extensions", "entries"):
        if key not in book:
            return f"Missing required field in character_book: {key}"
    if not isinstance(book["entries"], list):
        return "character_book.entries must be an array"
    if not isinstance(book["extensions"], dict):
        return "character_book.extensions must be an object"
    return None


def _check_v2(card: Dict[str, Any]) -> Optional[str]:
    if card.get("spec") != "chara_card_v2":
        return "spec must be 'chara_card_v2'"
    if card.get("spec_version") != "2.0":
        return "spec_version must be '2.0'"

    data = card.get("data")
    if not isinstance(data, dict):
        return "data object is required"

    for key in V2_REQUIRED_STRING_FIELDS:
        if key not in data:
            return f"Missing required field in data: {key}"
        if not _is_string(data[key]):
            return f"data.{key} must be a string"

    for key in ("alternate_greetings", "tags"):
        if not isinstance(data.get(key), list):
            return f"data.{key} must be an array"
    if not isinstance(data.get("extensions"), dict):
        return "data.extensions must be an object"

    for key in V2_OPTIONAL_STRING_FIELDS:
        if key in data and not _is_string(data[key]):
            return f"data.{key} must be a string if present"

    if data.get("character_book") is not None:
        return _check_character_book(data["character_book"])
    return None


def _check_v1(card: Dict[str, Any]) -> Optional[str]:
    for key in V1_REQUIRED_FIELDS:
        if key not in card:
            return f"Missing required field: {key}"
        if not _is_string(card[key]):
            return f"Field {key} must be a string"
    return None


SCHEMA_CHECKS = ((3, _check_v3), (2, _check_v2), (1, _check_v1))


def _classify_failure(card: Any) -> str:
    if not isinstance(card, dict):
        return "unknown_structure"
    if "spec" in card:
        return "invalid_spec"
    if "name" in card:
        return "incomplete_v1"
    return "missing_required_fields"


def validate_card(card: Any) -> int:
    """
    Return the schema generation (3, 2 or 1) the card satisfies.

    Newest schema is tried first. Raises CardValidationError carrying a
    diagnostic kind and the last schema's complaint when nothing matches.
    """
    if not isinstance(card, dict):
        raise CardValidationError("unknown_structure", "Card is not an object")

    errors = {}
    for version, check in SCHEMA_CHECKS:
        error = check(card)
        if error is None:
            return version
        errors[version] = error

    # Report the complaint of the schema the card claims to be
    claimed = detect_spec_version(card)
    detail = errors.get(claimed, errors[1])
    if "spec" in card and claimed is None:
        detail = f"unsupported spec {card.get('spec')!r}"
    raise CardValidationError(_classify_failure(card), detail)


def classify_card(card: Any) -> Optional[int]:
    """Like validate_card, but returns None instead of raising."""
    try:
        return validate_card(card)
    except CardValidationError:
        return None


# ===== EXTRACTION =====

def _text(source: Dict[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ExtractionError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _string_list(source: Dict[str, Any], key: str, optional: bool = False) -> Optional[List[str]]:
    value = source.get(key)
    if value is None:
        return None if optional else []
    if not isinstance(value, list):
        raise ExtractionError(f"{key} must be an array, got {type(value).__name__}")
    return [item for item in value if isinstance(item, str)]


def extract_card(card: Dict[str, Any], version: int) -> CanonicalCard:
    """Map a validated card onto the canonical record."""
    if version == 1:
        source = card
    else:
        source = card.get("data")
        if not isinstance(source, dict):
            raise ExtractionError("data must be an object")

    group_only = _string_list(source, "group_only_greetings", optional=True) if version == 3 else None

    return CanonicalCard(
        name=_text(source, "name"),
        description=_text(source, "description"),
        personality=_text(source, "personality"),
        scenario=_text(source, "scenario"),
        first_mes=_text(source, "first_mes"),
        mes_example=_text(source, "mes_example"),
        creator=_text(source, "creator"),
        creator_notes=_text(source, "creator_notes"),
        system_prompt=_text(source, "system_prompt"),
        post_history_instructions=_text(source, "post_history_instructions"),
        tags=_string_list(source, "tags"),
        spec_version=SPEC_VERSION_LABELS[version],
        alternate_greetings=_string_list(source, "alternate_greetings"),
        group_only_greetings=group_only,
        has_character_book=source.get("character_book") is not None,
        original=card,
    )


def parse_card_json(card: Any, source: str = "") -> CanonicalCard:
    """Validate and extract decoded card JSON, logging diagnostics on failure."""
    try:
        version = validate_card(card)
    except CardValidationError as e:
        where = f" in {source}" if source else ""
        logger.warning(f"Card validation failed{where} - {e.kind}: {e.detail}")
        raise
    return extract_card(card, version)


def parse_card_file(filepath: str) -> Optional[Tuple[CanonicalCard, EmbeddedMetadata]]:
    """
    Parse a PNG into a canonical card.

    Returns None for PNGs without card chunks. Format, decode, validation and
    extraction problems raise a CardError subclass.
    """
    embedded = parse_png_metadata(filepath)
    if embedded is None:
        return None
    return parse_card_json(embedded.data, filepath), embedded

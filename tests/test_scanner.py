import asyncio
import os

import pytest

from card_parser import extract_card
from scanner import (
    FolderNotFound,
    ScanProgress,
    ScanService,
    ScanStarted,
    compute_derived_fields,
    delete_card_file,
    estimate_prompt_tokens,
    list_png_files,
)
from conftest import v1_card, v2_card, v3_card


@pytest.fixture
def scanner(index, tmp_path):
    return ScanService(index, concurrency=5, make_thumbnails=False,
                       thumbnails_dir=str(tmp_path / "thumbs"))


@pytest.fixture
def library(index, cards_dir):
    return index.get_or_create_library(str(cards_dir))


@pytest.fixture
def sample_folder(cards_dir, write_png):
    """Alice (V1), Bob (V3) twice through different chunks, and a fake PNG."""
    write_png(cards_dir / "alice.png", [("chara", v1_card("Alice"))])
    write_png(cards_dir / "bob.png", [("ccv3", v3_card("Bob"))])
    bob_copy = v3_card("Bob")
    bob_copy["data"]["creation_date"] = 1800000000
    write_png(cards_dir / "nested" / "deeper" / "bob copy.png", [("chara", bob_copy)])
    (cards_dir / "broken.png").write_bytes(b"this was a jpeg once")
    return cards_dir


def _drain(events: asyncio.Queue):
    items = []
    while not events.empty():
        items.append(events.get_nowait())
    return items


def _updated_at(index, library_id):
    cards, _ = index.search_cards(library_id, limit=500)
    return {c.id: index.get_card(c.id)["updated_at"] for c in cards}


# ===== helpers =====

def test_list_png_files_recurses_case_insensitively(cards_dir, write_png):
    write_png(cards_dir / "a.png")
    write_png(cards_dir / "sub" / "B.PNG")
    (cards_dir / "notes.txt").write_text("hi")

    found = sorted(os.path.relpath(p, cards_dir) for p in list_png_files(str(cards_dir)))

    assert found == ["a.png", os.path.join("sub", "B.PNG")]


def test_token_estimate_joins_prompt_fields():
    card = extract_card(v1_card(description="abcd", personality="efgh", scenario="  ",
                                first_mes="", mes_example=""), 1)

    # "abcd\n\nefgh" is 10 bytes
    assert estimate_prompt_tokens(card) == 3


def test_token_estimate_counts_utf8_bytes():
    card = extract_card(v1_card(description="ééé", personality="", scenario="",
                                first_mes="", mes_example=""), 1)

    assert estimate_prompt_tokens(card) == 2


def test_token_estimate_zero_when_empty():
    card = extract_card(v1_card(description="", personality="", scenario="",
                                first_mes="", mes_example=""), 1)

    assert estimate_prompt_tokens(card) == 0


def test_derived_flags():
    card = extract_card(v3_card(system_prompt="   ", character_book={"entries": [], "extensions": {}}), 3)

    derived = compute_derived_fields(card)

    assert derived["has_system_prompt"] == 0
    assert derived["has_creator_notes"] == 1
    assert derived["has_character_book"] == 1
    assert derived["alternate_greetings_count"] == 1


# ===== scanning =====

async def test_end_to_end_scan(index, scanner, library, sample_folder):
    result = await scanner.scan_folder(str(sample_folder), library)

    assert result.total_files == 4
    assert result.processed_files == 4
    assert result.indexed == 2
    assert result.duplicates == 1
    assert result.failed == 1

    cards, total = index.search_cards(library, sort="name_asc")
    assert total == 2
    assert [c.name for c in cards] == ["Alice", "Bob"]
    assert [c.files_count for c in cards] == [1, 2]


async def test_scan_without_card_metadata(index, scanner, library, cards_dir, write_png):
    write_png(cards_dir / "photo.png")

    result = await scanner.scan_folder(str(cards_dir), library)

    assert result.no_metadata == 1
    assert index.count_cards(library) == 0


async def test_second_scan_writes_nothing(index, scanner, library, sample_folder):
    await scanner.scan_folder(str(sample_folder), library)
    before = _updated_at(index, library)

    result = await scanner.scan_folder(str(sample_folder), library)

    assert result.unchanged == 3
    assert result.indexed == 0
    assert _updated_at(index, library) == before


async def test_progress_is_monotonic_and_complete(scanner, library, sample_folder):
    events = asyncio.Queue()

    await scanner.scan_folder(str(sample_folder), library, events)

    items = _drain(events)
    assert isinstance(items[0], ScanStarted)
    assert items[-1] is None
    progress = [e.processed_files for e in items if isinstance(e, ScanProgress)]
    assert progress == sorted(progress)
    assert progress[-1] == items[0].total_files == 4


async def test_missing_folder_raises_and_closes_events(scanner, library, tmp_path):
    events = asyncio.Queue()

    with pytest.raises(FolderNotFound):
        await scanner.scan_folder(str(tmp_path / "gone"), library, events)

    assert _drain(events) == [None]


async def test_deleted_files_are_cleaned_up(index, scanner, library, sample_folder):
    await scanner.scan_folder(str(sample_folder), library)
    bob_id = index.get_tracked_file(str(sample_folder / "bob.png")).file.card_id

    os.remove(sample_folder / "nested" / "deeper" / "bob copy.png")
    result = await scanner.scan_folder(str(sample_folder), library)

    assert result.removed_files == 1
    assert result.removed_cards == 0
    assert len(index.get_card(bob_id)["files"]) == 1

    os.remove(sample_folder / "bob.png")
    result = await scanner.scan_folder(str(sample_folder), library)

    assert result.removed_cards == 1
    assert index.get_card(bob_id) is None
    assert index.delete_orphan_cards(library) == []


async def test_edited_file_updates_card_in_place(index, scanner, library, cards_dir, write_png):
    path = write_png(cards_dir / "alice.png", [("chara", v1_card("Alice"))])
    await scanner.scan_folder(str(cards_dir), library)
    card_id = index.get_tracked_file(path).file.card_id

    write_png(cards_dir / "alice.png", [("chara", v1_card("Alice", description="Rewritten at length."))])
    result = await scanner.scan_folder(str(cards_dir), library)

    assert result.indexed == 1
    card = index.get_card(card_id)
    assert card["description"] == "Rewritten at length."
    assert index.count_cards(library) == 1


async def test_edited_copy_splits_from_shared_card(index, scanner, library, sample_folder, write_png):
    await scanner.scan_folder(str(sample_folder), library)
    bob_id = index.get_tracked_file(str(sample_folder / "bob.png")).file.card_id

    copy_path = write_png(sample_folder / "nested" / "deeper" / "bob copy.png",
                          [("chara", v3_card("Bob", description="Bob, but evil and much longer."))])
    await scanner.scan_folder(str(sample_folder), library)

    assert index.count_cards(library) == 3
    assert len(index.get_card(bob_id)["files"]) == 1
    assert index.get_tracked_file(copy_path).file.card_id != bob_id


async def test_pinned_copy_leaving_card_clears_the_pin(index, scanner, library, sample_folder, write_png):
    await scanner.scan_folder(str(sample_folder), library)
    bob_path = str(sample_folder / "bob.png")
    copy_path = str(sample_folder / "nested" / "deeper" / "bob copy.png")
    bob_id = index.get_tracked_file(bob_path).file.card_id
    assert index.set_primary_file(bob_id, copy_path)

    write_png(copy_path, [("chara", v3_card("Bob", description="Bob after a long career change."))])
    await scanner.scan_folder(str(sample_folder), library)

    bob = index.get_card(bob_id)
    assert index.get_tracked_file(copy_path).file.card_id != bob_id
    assert bob["primary_file_path"] is None
    assert bob["resolved_primary_file_path"] == bob_path


async def test_edit_that_matches_another_card_merges(index, scanner, library, cards_dir, write_png):
    write_png(cards_dir / "alice.png", [("chara", v1_card("Alice"))])
    carol_path = write_png(cards_dir / "carol.png", [("chara", v2_card("Carol"))])
    await scanner.scan_folder(str(cards_dir), library)
    alice_id = index.get_tracked_file(str(cards_dir / "alice.png")).file.card_id

    write_png(cards_dir / "carol.png", [("chara", v1_card("Alice"))])
    await scanner.scan_folder(str(cards_dir), library)

    assert index.count_cards(library) == 1
    assert index.get_tracked_file(carol_path).file.card_id == alice_id


async def test_tags_are_indexed(index, scanner, library, cards_dir, write_png):
    path = write_png(cards_dir / "carol.png", [("chara", v2_card("Carol"))])

    await scanner.scan_folder(str(cards_dir), library)

    card_id = index.get_tracked_file(path).file.card_id
    assert index.get_card_tag_names(card_id) == ["fantasy", "merchant"]


async def test_thumbnails_follow_the_card(index, library, cards_dir, write_png, tmp_path):
    thumbs = tmp_path / "thumbs"
    scanner = ScanService(index, concurrency=2, make_thumbnails=True, thumbnails_dir=str(thumbs))
    path = write_png(cards_dir / "bob.png", [("ccv3", v3_card("Bob"))])

    await scanner.scan_folder(str(cards_dir), library)

    card_id = index.get_tracked_file(path).file.card_id
    assert index.get_card(card_id)["avatar_path"] == f"cache/thumbnails/{card_id}.webp"
    assert (thumbs / f"{card_id}.webp").exists()

    os.remove(path)
    await scanner.scan_folder(str(cards_dir), library)

    assert not (thumbs / f"{card_id}.webp").exists()


async def test_libraries_are_isolated(index, scanner, tmp_path, write_png):
    first = tmp_path / "first"
    second = tmp_path / "second"
    write_png(first / "alice.png", [("chara", v1_card("Alice"))])
    write_png(second / "alice.png", [("chara", v1_card("Alice"))])
    lib_first = index.get_or_create_library(str(first))
    lib_second = index.get_or_create_library(str(second))

    await scanner.scan_folder(str(first), lib_first)
    await scanner.scan_folder(str(second), lib_second)

    assert index.count_cards(lib_first) == 1
    assert index.count_cards(lib_second) == 1


async def test_delete_card_file_from_disk(index, scanner, library, sample_folder, tmp_path):
    await scanner.scan_folder(str(sample_folder), library)
    alice_path = str(sample_folder / "alice.png")
    alice_id = index.get_tracked_file(alice_path).file.card_id

    deleted = delete_card_file(index, alice_path, delete_from_disk=True,
                               thumbnails_dir=str(tmp_path / "thumbs"))

    assert deleted["id"] == alice_id
    assert not os.path.exists(alice_path)
    assert index.get_card(alice_id) is None

import uuid

from card_index import CardFileRecord, CardIndexDB, normalize_folder_path
from conftest import card_fields, v1_card, v2_card, v3_card


def _file(path, card_id, birthtime=1000, mtime=1000, size=10):
    return CardFileRecord(
        file_path=path,
        card_id=card_id,
        file_mtime=mtime,
        file_birthtime=birthtime,
        file_size=size,
        folder_path="/cards",
    )


def _insert(index, library_id, card, version, created_at=1000):
    card_id, inserted = index.insert_card_or_get_existing(
        str(uuid.uuid4()), library_id, card_fields(card, version), created_at=created_at, avatar_path=None
    )
    assert inserted
    return card_id


# ===== libraries =====

def test_get_or_create_library_is_idempotent(index, tmp_path):
    first = index.get_or_create_library(str(tmp_path))
    again = index.get_or_create_library(str(tmp_path) + "/")

    assert first == again
    assert index.get_library_id(str(tmp_path / "sub" / "..")) == first


def test_normalize_folder_path_collapses_dots(tmp_path):
    assert normalize_folder_path(str(tmp_path / "a" / "..")) == normalize_folder_path(str(tmp_path))


# ===== cards =====

def test_insert_or_fetch_returns_existing_owner(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    fields = card_fields(v1_card("Alice"), 1)

    winner, inserted = index.insert_card_or_get_existing("card-a", library_id, fields, created_at=1, avatar_path=None)
    loser, loser_inserted = index.insert_card_or_get_existing("card-b", library_id, fields, created_at=1, avatar_path=None)

    assert (winner, inserted) == ("card-a", True)
    assert (loser, loser_inserted) == ("card-a", False)
    assert index.count_cards(library_id) == 1


def test_same_hash_in_two_libraries_is_two_cards(index, tmp_path):
    lib_a = index.get_or_create_library(str(tmp_path / "a"))
    lib_b = index.get_or_create_library(str(tmp_path / "b"))
    fields = card_fields(v1_card("Alice"), 1)

    index.insert_card_or_get_existing("one", lib_a, fields, created_at=1, avatar_path=None)
    card_id, inserted = index.insert_card_or_get_existing("two", lib_b, fields, created_at=1, avatar_path=None)

    assert (card_id, inserted) == ("two", True)


def test_update_card_refuses_hash_owned_by_another_card(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    alice = _insert(index, library_id, v1_card("Alice"), 1)
    bob = _insert(index, library_id, v3_card("Bob"), 3)

    assert index.update_card(bob, card_fields(v1_card("Alice"), 1), created_at=1000) is False
    assert index.get_card(bob)["name"] == "Bob"
    assert index.get_card(alice)["name"] == "Alice"


def test_created_at_never_moves_forward(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v1_card("Alice"), 1, created_at=5000)

    index.update_card(card_id, card_fields(v1_card("Alice", description="changed"), 1), created_at=9000)
    assert index.get_card(card_id)["created_at"] == 5000

    index.attach_file(_file("/cards/old.png", card_id), [], created_at=2000)
    assert index.get_card(card_id)["created_at"] == 2000


def test_attach_file_rewrites_tags(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v2_card("Carol"), 2)

    index.attach_file(_file("/cards/carol.png", card_id), ["Fantasy", "Merchant"], created_at=1000)
    assert index.get_card_tag_names(card_id) == ["fantasy", "merchant"]

    index.attach_file(_file("/cards/carol.png", card_id), ["fantasy", " Night "], created_at=1000)
    assert index.get_card_tag_names(card_id) == ["fantasy", "night"]

    # First spelling seen stays the display name
    names = {t["rawName"]: t["name"] for t in index.get_all_tags()}
    assert names["fantasy"] == "Fantasy"
    assert names["night"] == "Night"


def test_ensure_tags_exist_tolerates_repeats(index):
    index.ensure_tags_exist(["Horror", "horror", "HORROR", "", 7])

    assert [t["rawName"] for t in index.get_all_tags()] == ["horror"]


def test_removing_last_file_deletes_card(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v3_card("Bob"), 3)
    index.attach_file(_file("/cards/bob.png", card_id), ["Sci-Fi"], created_at=1000)
    index.attach_file(_file("/cards/bob copy.png", card_id, birthtime=2000), ["Sci-Fi"], created_at=2000)

    assert index.remove_card_file("/cards/bob copy.png") is None
    assert index.get_card(card_id) is not None

    deleted = index.remove_card_file("/cards/bob.png")
    assert deleted == {"id": card_id, "avatar_path": None}
    assert index.get_card(card_id) is None
    assert index.get_card_tag_names(card_id) == []
    assert index.delete_orphan_cards(library_id) == []


def test_removing_untracked_file_is_noop(index):
    assert index.remove_card_file("/nowhere.png") is None


def test_delete_orphan_cards(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v1_card("Alice"), 1)

    orphans = index.delete_orphan_cards(library_id)

    assert [o["id"] for o in orphans] == [card_id]
    assert index.count_cards(library_id) == 0


def test_delete_card_cascades_to_files(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v1_card("Alice"), 1)
    index.attach_file(_file("/cards/alice.png", card_id), [], created_at=1000)

    assert index.delete_card(card_id) is True
    assert index.get_tracked_file("/cards/alice.png") is None


def test_primary_file_pin_and_fallback(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v3_card("Bob"), 3)
    index.attach_file(_file("/cards/b-newer.png", card_id, birthtime=3000), [], created_at=3000)
    index.attach_file(_file("/cards/a-older.png", card_id, birthtime=1000), [], created_at=1000)

    assert index.get_card(card_id)["resolved_primary_file_path"] == "/cards/a-older.png"

    assert index.set_primary_file(card_id, "/cards/unrelated.png") is False
    assert index.set_primary_file(card_id, "/cards/b-newer.png") is True
    assert index.get_card(card_id)["resolved_primary_file_path"] == "/cards/b-newer.png"

    # Removing the pinned file falls back to the earliest remaining one
    index.remove_card_file("/cards/b-newer.png")
    card = index.get_card(card_id)
    assert card["primary_file_path"] is None
    assert card["resolved_primary_file_path"] == "/cards/a-older.png"


def test_tracked_file_reports_card_state(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    card_id = _insert(index, library_id, v1_card("Alice"), 1)
    index.attach_file(_file("/cards/alice.png", card_id, size=42), [], created_at=1000)

    tracked = index.get_tracked_file("/cards/alice.png")

    assert tracked.file.card_id == card_id
    assert tracked.file.file_size == 42
    assert tracked.library_id == library_id
    assert tracked.files_count == 1
    assert tracked.prompt_tokens_est > 0
    assert tracked.content_hash == card_fields(v1_card("Alice"), 1)["content_hash"]


# ===== queries =====

def _seed_search(index, tmp_path):
    library_id = index.get_or_create_library(str(tmp_path))
    ids = {}
    for name, card, version, created in (
        ("Alice", v1_card("Alice"), 1, 1000),
        ("Bob", v3_card("Bob"), 3, 2000),
        ("Carol", v2_card("Carol"), 2, 3000),
    ):
        card_id = _insert(index, library_id, card, version, created_at=created)
        index.attach_file(_file(f"/cards/{name}.png", card_id, birthtime=created),
                          card.get("data", {}).get("tags", []), created_at=created)
        ids[name] = card_id
    return library_id, ids


def test_search_sorts_and_pages(index, tmp_path):
    library_id, _ = _seed_search(index, tmp_path)

    newest_first, total = index.search_cards(library_id)
    assert total == 3
    assert [c.name for c in newest_first] == ["Carol", "Bob", "Alice"]

    page, total = index.search_cards(library_id, sort="name_asc", limit=1, offset=1)
    assert total == 3
    assert [c.name for c in page] == ["Bob"]


def test_search_filters(index, tmp_path):
    library_id, ids = _seed_search(index, tmp_path)

    by_tag, _ = index.search_cards(library_id, tags=["sci-fi"])
    assert [c.id for c in by_tag] == [ids["Bob"]]

    by_version, _ = index.search_cards(library_id, spec_versions=["1.0", "2.0"], sort="name_asc")
    assert [c.name for c in by_version] == ["Alice", "Carol"]

    with_notes, _ = index.search_cards(library_id, flags={"has_creator_notes": True})
    assert [c.name for c in with_notes] == ["Bob"]

    greeters, _ = index.search_cards(library_id, min_alternate_greetings=1, sort="name_asc")
    assert [c.name for c in greeters] == ["Bob", "Carol"]

    text, _ = index.search_cards(library_id, query="librarian")
    assert [c.name for c in text] == ["Alice"]


def test_search_summary_shape(index, tmp_path):
    library_id, ids = _seed_search(index, tmp_path)

    (bob,), _ = index.search_cards(library_id, creator="pilotfan")

    assert bob.id == ids["Bob"]
    assert bob.tags == ["Sci-Fi"]
    assert bob.file_path == "/cards/Bob.png"
    assert bob.files_count == 1
    assert bob.avatar_url == "/api/thumbnail/default"
    assert bob.flags["has_creator_notes"] is True
    assert bob.flags["has_system_prompt"] is False


def test_filters_count_per_library(index, tmp_path):
    library_id, _ = _seed_search(index, tmp_path)

    filters = index.get_filters(library_id)

    assert {"value": "1.0", "count": 1} in filters["spec_versions"]
    assert {"value": "pilotfan", "count": 1} in filters["creators"]
    assert {"value": "Fantasy", "count": 1} in filters["tags"]


def test_duplicate_groups(index, tmp_path):
    library_id, ids = _seed_search(index, tmp_path)
    index.attach_file(_file("/cards/Bob copy.png", ids["Bob"], birthtime=5000), ["Sci-Fi"], created_at=5000)

    groups = index.list_duplicate_groups(library_id)

    assert [g["id"] for g in groups] == [ids["Bob"]]
    assert [f.file_path for f in groups[0]["files"]] == ["/cards/Bob.png", "/cards/Bob copy.png"]


def test_reopening_database_keeps_data(tmp_path):
    path = str(tmp_path / "cards.db")
    first = CardIndexDB(path)
    library_id = first.get_or_create_library(str(tmp_path))
    first.close()

    second = CardIndexDB(path)
    try:
        assert second.get_library_id(str(tmp_path)) == library_id
    finally:
        second.close()

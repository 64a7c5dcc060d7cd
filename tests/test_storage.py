from __future__ import annotations

import json
from pathlib import Path

from folio.storage import (
    BOOKMARKS_FILENAME,
    MAX_CONVERSATIONS_PER_BOOK,
    MAX_MESSAGES_PER_CONVERSATION,
    BookFileStore,
    BookmarkStore,
    ChatStore,
    JsonKeyedStore,
    MindMapStore,
    NotebookStore,
    ReaderStores,
)


def test_keyed_store_save_get_remove(tmp_path: Path) -> None:
    store = JsonKeyedStore(tmp_path / "notes.json")
    assert store.get_all() == {}
    assert store.save("book", {"id": "n1", "text": "first"})
    assert store.save("book", {"id": "n1", "color": "red"})
    assert store.save("other", {"text": "generated id"})
    records = store.get_book("book")
    assert records == [{"id": "n1", "text": "first", "color": "red"}]
    generated = store.get_book("other")[0]["id"]
    assert generated.startswith("rec_")
    assert store.remove("book", "n1")
    assert not store.remove("book", "n1")
    assert "book" not in store.get_all()


def test_keyed_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonKeyedStore(path)
    assert store.get_all() == {}
    assert store.save("book", {"id": "x"})
    assert json.loads(path.read_text(encoding="utf-8")) == {"book": [{"id": "x"}]}


def test_bookmarks_upsert_by_location(tmp_path: Path) -> None:
    store = BookmarkStore(tmp_path / BOOKMARKS_FILENAME)
    store.save("book", {"chapter_index": 2, "paragraph_number": 4, "label": "later"})
    store.save("book", {"chapter_index": 0, "paragraph_number": 7})
    store.save("book", {"chapter_index": 2, "paragraph_number": 1})
    first = store.find("book", 2, 4)
    assert first is not None
    store.save("book", {"chapter_index": 2, "paragraph_number": 4, "label": "renamed"})

    records = store.get_book("book")
    assert [(r["chapter_index"], r["paragraph_number"]) for r in records] == [(0, 7), (2, 1), (2, 4)]
    updated = store.find("book", 2, 4)
    assert updated is not None
    assert updated["id"] == first["id"]
    assert updated["id"].startswith("bm_")
    assert updated["label"] == "renamed"
    assert updated["created_at"] == first["created_at"]
    assert store.chapter_paragraphs("book", 2) == {1, 4}
    assert store.is_bookmarked("book", 0, 7)
    assert store.remove_by_location("book", 0, 7)
    assert not store.is_bookmarked("book", 0, 7)
    assert not store.remove_by_location("book", 0, 7)


def test_chat_store_keeps_newest_conversations(tmp_path: Path) -> None:
    store = ChatStore(tmp_path / "chats.json")
    created = [store.create("book", {"book_title": "Sample"}) for _ in range(MAX_CONVERSATIONS_PER_BOOK + 2)]
    conversations = store.get_book("book")
    assert len(conversations) == MAX_CONVERSATIONS_PER_BOOK
    assert conversations[0]["id"] == created[-1]["id"]
    assert conversations[0]["title"] == "New Conversation"
    assert conversations[0]["metadata"]["book_title"] == "Sample"


def test_first_user_message_titles_conversation(tmp_path: Path) -> None:
    store = ChatStore(tmp_path / "chats.json")
    older = store.create("book")
    newer = store.create("book")
    question = "What happens to the lighthouse keeper after the storm passes over?"
    assert store.add_message("book", older["id"], {"role": "user", "content": question})
    assert store.add_message("book", older["id"], {"role": "user", "content": "And then?"})
    conversations = store.get_book("book")
    assert conversations[0]["id"] == older["id"]
    assert conversations[1]["id"] == newer["id"]
    assert conversations[0]["title"] == question[:50] + "..."
    assert [m["content"] for m in conversations[0]["messages"]] == [question, "And then?"]
    assert not store.add_message("book", "conv_missing", {"role": "user", "content": "x"})


def test_message_cap_keeps_system_prompt(tmp_path: Path) -> None:
    store = ChatStore(tmp_path / "chats.json")
    conversation = store.create("book")
    store.add_message("book", conversation["id"], {"role": "system", "content": "context"})
    for number in range(MAX_MESSAGES_PER_CONVERSATION + 5):
        store.add_message("book", conversation["id"], {"role": "user", "content": str(number)})
    messages = store.get_book("book")[0]["messages"]
    assert len(messages) == MAX_MESSAGES_PER_CONVERSATION
    assert messages[0]["role"] == "system"
    assert messages[-1]["content"] == str(MAX_MESSAGES_PER_CONVERSATION + 4)


def test_chat_update(tmp_path: Path) -> None:
    store = ChatStore(tmp_path / "chats.json")
    conversation = store.create("book")
    assert store.update("book", conversation["id"], {"title": "Renamed"})
    assert store.get("book", conversation["id"])["title"] == "Renamed"
    assert not store.update("book", "missing", {"title": "x"})


def test_book_files_switch_to_blobs_above_threshold(tmp_path: Path) -> None:
    store = BookFileStore(tmp_path / "library.json", tmp_path / "blobs", threshold=16)
    small = b"tiny"
    large = b"x" * 64
    assert store.save_file("small", small, title="Small")
    assert store.save_file("large", large)

    payload = json.loads((tmp_path / "library.json").read_text(encoding="utf-8"))
    assert payload["small"][0]["storage"] == "inline"
    assert payload["small"][0]["title"] == "Small"
    assert payload["large"][0]["storage"] == "blob"
    assert "data" not in payload["large"][0]
    assert (tmp_path / "blobs" / "large.epub").read_bytes() == large

    assert store.load_file("small") == small
    assert store.load_file("large") == large
    assert store.load_file("missing") is None

    assert store.delete_file("large")
    assert not (tmp_path / "blobs" / "large.epub").exists()
    assert store.load_file("large") is None


def test_book_files_drop_inline_data_when_moving_to_blob(tmp_path: Path) -> None:
    store = BookFileStore(tmp_path / "library.json", tmp_path / "blobs", threshold=16)
    assert store.save_file("book", b"tiny", title="Book")
    assert store.save_file("book", b"x" * 64)

    record = json.loads((tmp_path / "library.json").read_text(encoding="utf-8"))["book"][0]
    assert record["storage"] == "blob"
    assert "data" not in record
    assert "title" not in record
    assert store.load_file("book") == b"x" * 64

    assert store.save_file("book", b"tiny again")
    record = store.get("book", "book")
    assert record["storage"] == "inline"
    assert "blob" not in record
    assert not (tmp_path / "blobs" / "book.epub").exists()
    assert store.load_file("book") == b"tiny again"


def test_notebook_appends_cited_entries(tmp_path: Path) -> None:
    store = NotebookStore(tmp_path / "notebooks.json")
    assert store.get_content("book") == ""
    assert store.add_entry("book", "plain note")
    assert store.add_entry(
        "book",
        "Why the storm?",
        source_text="It was a dark night.",
        chapter_title="Opening",
        paragraph_number=3,
    )
    assert store.get_content("book") == (
        "plain note> It was a dark night.\n\nWhy the storm?\n[Opening, ¶3]\n\n"
    )
    record = store.get("book", "notebook")
    assert record["book_id"] == "book"
    assert record["last_edited"]


def test_notebook_inserts_at_position_and_replaces_content(tmp_path: Path) -> None:
    store = NotebookStore(tmp_path / "notebooks.json")
    assert store.update_content("book", "head tail")
    assert store.add_entry("book", "[mid] ", position=5)
    assert store.get_content("book") == "head [mid] tail"
    assert store.add_entry("book", "x", paragraph_number=2, position=999)
    assert store.get_content("book").endswith("tailx\n[¶2]\n\n")
    assert store.update_content("book", "fresh")
    assert store.get_content("book") == "fresh"
    assert len(store.get_book("book")) == 1


def test_mind_map_nodes_and_connections(tmp_path: Path) -> None:
    store = MindMapStore(tmp_path / "mindmaps.json")
    assert store.get_map("book", "ch0") == {"id": "ch0", "nodes": [], "connections": []}
    first = store.create_node("book", "ch0", 10, 20)
    second = store.create_node("book", "ch0", 30, 40, title="Theme")
    assert first["title"] == "New Node"
    assert first["color"] == "#3B82F6"
    assert first["width"] == 150
    assert first["linked_paragraph"] is None
    assert first["id"] != second["id"]

    assert store.update_node("book", "ch0", first["id"], {"title": "Hero", "id": "hijack"})
    assert not store.update_node("book", "ch0", "missing", {"title": "x"})
    nodes = store.get_map("book", "ch0")["nodes"]
    assert [node["title"] for node in nodes] == ["Hero", "Theme"]
    assert nodes[0]["id"] == first["id"]

    assert store.create_connection("book", "ch0", first["id"], second["id"])
    assert not store.create_connection("book", "ch0", second["id"], first["id"])
    assert store.get_map("book", "ch0")["connections"] == [
        {"from": first["id"], "to": second["id"]}
    ]
    assert store.delete_connection("book", "ch0", second["id"], first["id"])
    assert not store.delete_connection("book", "ch0", second["id"], first["id"])

    assert store.create_connection("book", "ch0", first["id"], second["id"])
    assert store.delete_node("book", "ch0", second["id"])
    assert not store.delete_node("book", "ch0", second["id"])
    mind_map = store.get_map("book", "ch0")
    assert [node["id"] for node in mind_map["nodes"]] == [first["id"]]
    assert mind_map["connections"] == []
    assert store.get_map("book", "ch1")["nodes"] == []


def test_mind_map_paragraph_links(tmp_path: Path) -> None:
    store = MindMapStore(tmp_path / "mindmaps.json")
    node = store.create_node("book", "ch0", 0, 0)
    assert store.node_by_paragraph("book", "ch0", 4) is None
    assert store.link_node_to_paragraph("book", "ch0", node["id"], 4)
    assert store.node_by_paragraph("book", "ch0", 4)["id"] == node["id"]
    assert store.node_by_paragraph("book", "ch1", 4) is None
    assert not store.link_node_to_paragraph("book", "ch0", "missing", 4)


def test_reader_stores_share_one_directory(tmp_path: Path) -> None:
    stores = ReaderStores.at(tmp_path / "data")
    stores.bookmarks.save("book", {"chapter_index": 0, "paragraph_number": 1})
    stores.chats.create("book")
    stores.notebooks.add_entry("book", "note")
    stores.mindmaps.create_node("book", "ch0", 0, 0)
    assert (tmp_path / "data" / "bookmarks.json").exists()
    assert (tmp_path / "data" / "chats.json").exists()
    assert (tmp_path / "data" / "notebooks.json").exists()
    assert (tmp_path / "data" / "mindmaps.json").exists()
    assert stores.files.blob_dir == tmp_path / "data" / "blobs"

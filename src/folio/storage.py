from __future__ import annotations

import base64
import json
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

BOOKMARKS_FILENAME = "bookmarks.json"
CHATS_FILENAME = "chats.json"
LIBRARY_FILENAME = "library.json"
NOTEBOOKS_FILENAME = "notebooks.json"
MINDMAPS_FILENAME = "mindmaps.json"
BLOB_DIRNAME = "blobs"
BLOB_THRESHOLD_BYTES = 2 * 1024 * 1024
MAX_CONVERSATIONS_PER_BOOK = 10
MAX_MESSAGES_PER_CONVERSATION = 100
CONVERSATION_TITLE_CHARS = 50
NOTEBOOK_RECORD_ID = "notebook"
MIND_MAP_NODE_DEFAULTS: dict[str, Any] = {
    "description": "",
    "color": "#3B82F6",
    "type": "default",
    "width": 150,
    "height": 60,
    "linked_paragraph": None,
}

Record = dict[str, Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class JsonKeyedStore:
    """Records grouped by book id, persisted as one JSON document.

    Mirrors a browser key-value slot: every write rewrites the whole file.
    Unreadable files load as empty rather than failing.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _load(self) -> dict[str, list[Record]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {
            str(key): [entry for entry in value if isinstance(entry, dict)]
            for key, value in raw.items()
            if isinstance(value, list)
        }

    def _dump(self, payload: Mapping[str, list[Record]]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.error("Failed to save %s: %s", self.path, exc)
            return False
        return True

    def get_all(self) -> dict[str, list[Record]]:
        with self._lock:
            return self._load()

    def get_book(self, book_id: str) -> list[Record]:
        return self.get_all().get(book_id, [])

    def get(self, book_id: str, record_id: str) -> Record | None:
        for record in self.get_book(book_id):
            if record.get("id") == record_id:
                return record
        return None

    def save(self, book_id: str, record: Mapping[str, Any]) -> bool:
        with self._lock:
            payload = self._load()
            records = payload.setdefault(book_id, [])
            entry = dict(record)
            entry.setdefault("id", _generate_id("rec"))
            for position, existing in enumerate(records):
                if existing.get("id") == entry["id"]:
                    records[position] = {**existing, **entry}
                    break
            else:
                records.append(entry)
            return self._dump(payload)

    def remove(self, book_id: str, record_id: str) -> bool:
        with self._lock:
            payload = self._load()
            records = payload.get(book_id)
            if not records:
                return False
            filtered = [entry for entry in records if entry.get("id") != record_id]
            if len(filtered) == len(records):
                return False
            if filtered:
                payload[book_id] = filtered
            else:
                payload.pop(book_id, None)
            return self._dump(payload)

    def clear_book(self, book_id: str) -> bool:
        with self._lock:
            payload = self._load()
            payload.pop(book_id, None)
            return self._dump(payload)


def _bookmark_sort_key(entry: Record) -> tuple[int, int]:
    chapter = entry.get("chapter_index")
    paragraph = entry.get("paragraph_number")
    return (
        chapter if isinstance(chapter, int) else 0,
        paragraph if isinstance(paragraph, int) else 0,
    )


class BookmarkStore(JsonKeyedStore):
    """Paragraph bookmarks; one per (chapter, paragraph) location."""

    def save(self, book_id: str, record: Mapping[str, Any]) -> bool:
        with self._lock:
            payload = self._load()
            records = payload.setdefault(book_id, [])
            now = _now_iso()
            location = (record.get("chapter_index"), record.get("paragraph_number"))
            for position, existing in enumerate(records):
                if (existing.get("chapter_index"), existing.get("paragraph_number")) == location:
                    records[position] = {
                        **existing,
                        **record,
                        "id": existing.get("id"),
                        "updated_at": now,
                    }
                    break
            else:
                records.append(
                    {
                        **record,
                        "id": _generate_id("bm"),
                        "created_at": now,
                        "updated_at": now,
                    }
                )
            records.sort(key=_bookmark_sort_key)
            return self._dump(payload)

    def find(self, book_id: str, chapter_index: int, paragraph_number: int) -> Record | None:
        for entry in self.get_book(book_id):
            if (
                entry.get("chapter_index") == chapter_index
                and entry.get("paragraph_number") == paragraph_number
            ):
                return entry
        return None

    def is_bookmarked(self, book_id: str, chapter_index: int, paragraph_number: int) -> bool:
        return self.find(book_id, chapter_index, paragraph_number) is not None

    def remove_by_location(self, book_id: str, chapter_index: int, paragraph_number: int) -> bool:
        with self._lock:
            entry = self.find(book_id, chapter_index, paragraph_number)
            if entry is None:
                return False
            return self.remove(book_id, str(entry.get("id")))

    def chapter_paragraphs(self, book_id: str, chapter_index: int) -> set[int]:
        return {
            entry["paragraph_number"]
            for entry in self.get_book(book_id)
            if entry.get("chapter_index") == chapter_index
            and isinstance(entry.get("paragraph_number"), int)
        }


class ChatStore(JsonKeyedStore):
    """AI chat conversations per book, most recently updated first."""

    def create(self, book_id: str, metadata: Mapping[str, Any] | None = None) -> Record:
        metadata = dict(metadata or {})
        now = _now_iso()
        conversation: Record = {
            "id": _generate_id("conv"),
            "book_id": book_id,
            "title": metadata.get("title") or "New Conversation",
            "messages": [],
            "created_at": now,
            "updated_at": now,
            "metadata": {
                "book_title": metadata.get("book_title", ""),
                "chapter_index": metadata.get("chapter_index", 0),
                **metadata,
            },
        }
        with self._lock:
            payload = self._load()
            conversations = payload.setdefault(book_id, [])
            conversations.insert(0, conversation)
            del conversations[MAX_CONVERSATIONS_PER_BOOK:]
            self._dump(payload)
        return conversation

    def add_message(self, book_id: str, conversation_id: str, message: Mapping[str, Any]) -> bool:
        with self._lock:
            payload = self._load()
            conversations = payload.get(book_id, [])
            for position, conversation in enumerate(conversations):
                if conversation.get("id") == conversation_id:
                    break
            else:
                return False
            messages = conversation.setdefault("messages", [])
            messages.append({**message, "id": _generate_id("msg"), "timestamp": _now_iso()})
            if len(messages) > MAX_MESSAGES_PER_CONVERSATION:
                system = next((m for m in messages if m.get("role") == "system"), None)
                recent = messages[-(MAX_MESSAGES_PER_CONVERSATION - 1):]
                if system is not None and system not in recent:
                    recent = [system, *recent]
                conversation["messages"] = recent
            conversation["updated_at"] = _now_iso()
            user_messages = [m for m in conversation["messages"] if m.get("role") == "user"]
            if message.get("role") == "user" and len(user_messages) == 1:
                text = str(message.get("content", ""))
                suffix = "..." if len(text) > CONVERSATION_TITLE_CHARS else ""
                conversation["title"] = text[:CONVERSATION_TITLE_CHARS] + suffix
            conversations.pop(position)
            conversations.insert(0, conversation)
            payload[book_id] = conversations
            return self._dump(payload)

    def update(self, book_id: str, conversation_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            payload = self._load()
            for conversation in payload.get(book_id, []):
                if conversation.get("id") == conversation_id:
                    conversation.update(updates)
                    conversation["updated_at"] = _now_iso()
                    return self._dump(payload)
        return False


class NotebookStore(JsonKeyedStore):
    """One free-form notebook per book, kept as a single record."""

    def get_content(self, book_id: str) -> str:
        record = self.get(book_id, NOTEBOOK_RECORD_ID)
        if record is None:
            return ""
        return str(record.get("content") or "")

    def update_content(self, book_id: str, content: str) -> bool:
        with self._lock:
            payload = self._load()
            payload[book_id] = [
                {
                    "id": NOTEBOOK_RECORD_ID,
                    "book_id": book_id,
                    "content": content,
                    "last_edited": _now_iso(),
                }
            ]
            return self._dump(payload)

    def add_entry(
        self,
        book_id: str,
        text: str,
        *,
        source_text: str | None = None,
        chapter_title: str | None = None,
        paragraph_number: int | None = None,
        position: int | None = None,
    ) -> bool:
        """Insert ``text`` at ``position`` (default: the end).

        With a source quote or location the entry becomes a cited block::

            > quoted source

            text
            [Chapter, ¶3]
        """
        entry = text
        if source_text or chapter_title or paragraph_number:
            citation = []
            if chapter_title:
                citation.append(chapter_title)
            if paragraph_number:
                citation.append(f"¶{paragraph_number}")
            cited = f"[{', '.join(citation)}]" if citation else ""
            entry = f"{text}\n{cited}\n\n"
            if source_text:
                entry = f"> {source_text}\n\n{entry}"
        with self._lock:
            content = self.get_content(book_id)
            at = len(content) if position is None else max(0, min(position, len(content)))
            return self.update_content(book_id, content[:at] + entry + content[at:])


def _find_mind_map(payload: dict[str, list[Record]], book_id: str, chapter_id: str) -> Record:
    maps = payload.setdefault(book_id, [])
    for mind_map in maps:
        if mind_map.get("id") == chapter_id:
            break
    else:
        mind_map = {"id": chapter_id}
        maps.append(mind_map)
    if not isinstance(mind_map.get("nodes"), list):
        mind_map["nodes"] = []
    if not isinstance(mind_map.get("connections"), list):
        mind_map["connections"] = []
    return mind_map


def _same_link(connection: Mapping[str, Any], from_id: str, to_id: str) -> bool:
    ends = (connection.get("from"), connection.get("to"))
    return ends in {(from_id, to_id), (to_id, from_id)}


class MindMapStore(JsonKeyedStore):
    """Per-chapter mind maps: positioned nodes plus undirected connections."""

    def get_map(self, book_id: str, chapter_id: str) -> Record:
        record = self.get(book_id, chapter_id) or {}
        return {
            "id": chapter_id,
            "nodes": list(record.get("nodes") or []),
            "connections": list(record.get("connections") or []),
        }

    def create_node(
        self,
        book_id: str,
        chapter_id: str,
        x: float,
        y: float,
        title: str = "New Node",
    ) -> Record | None:
        node: Record = {
            "id": _generate_id("node"),
            "x": x,
            "y": y,
            "title": title,
            **MIND_MAP_NODE_DEFAULTS,
        }
        with self._lock:
            payload = self._load()
            _find_mind_map(payload, book_id, chapter_id)["nodes"].append(node)
            if not self._dump(payload):
                return None
        return node

    def update_node(
        self,
        book_id: str,
        chapter_id: str,
        node_id: str,
        updates: Mapping[str, Any],
    ) -> bool:
        with self._lock:
            payload = self._load()
            for node in _find_mind_map(payload, book_id, chapter_id)["nodes"]:
                if node.get("id") == node_id:
                    node.update({**updates, "id": node_id})
                    return self._dump(payload)
        return False

    def delete_node(self, book_id: str, chapter_id: str, node_id: str) -> bool:
        with self._lock:
            payload = self._load()
            mind_map = _find_mind_map(payload, book_id, chapter_id)
            nodes = [node for node in mind_map["nodes"] if node.get("id") != node_id]
            if len(nodes) == len(mind_map["nodes"]):
                return False
            mind_map["nodes"] = nodes
            mind_map["connections"] = [
                link
                for link in mind_map["connections"]
                if node_id not in (link.get("from"), link.get("to"))
            ]
            return self._dump(payload)

    def create_connection(self, book_id: str, chapter_id: str, from_id: str, to_id: str) -> bool:
        with self._lock:
            payload = self._load()
            mind_map = _find_mind_map(payload, book_id, chapter_id)
            if any(_same_link(link, from_id, to_id) for link in mind_map["connections"]):
                return False
            mind_map["connections"].append({"from": from_id, "to": to_id})
            return self._dump(payload)

    def delete_connection(self, book_id: str, chapter_id: str, from_id: str, to_id: str) -> bool:
        with self._lock:
            payload = self._load()
            mind_map = _find_mind_map(payload, book_id, chapter_id)
            kept = [link for link in mind_map["connections"] if not _same_link(link, from_id, to_id)]
            if len(kept) == len(mind_map["connections"]):
                return False
            mind_map["connections"] = kept
            return self._dump(payload)

    def link_node_to_paragraph(
        self,
        book_id: str,
        chapter_id: str,
        node_id: str,
        paragraph_number: int | None,
    ) -> bool:
        return self.update_node(book_id, chapter_id, node_id, {"linked_paragraph": paragraph_number})

    def node_by_paragraph(self, book_id: str, chapter_id: str, paragraph_number: int) -> Record | None:
        for node in self.get_map(book_id, chapter_id)["nodes"]:
            if node.get("linked_paragraph") == paragraph_number:
                return node
        return None


_SAFE_BLOB_NAME = re.compile(r"[^A-Za-z0-9._-]")


class BookFileStore(JsonKeyedStore):
    """Stores EPUB bytes; large payloads go to the blob directory."""

    def __init__(self, path: Path, blob_dir: Path, threshold: int = BLOB_THRESHOLD_BYTES) -> None:
        super().__init__(path)
        self.blob_dir = blob_dir
        self.threshold = threshold

    def _blob_path(self, book_id: str) -> Path:
        return self.blob_dir / f"{_SAFE_BLOB_NAME.sub('_', book_id)}.epub"

    def save_file(self, book_id: str, data: bytes, **info: Any) -> bool:
        record: Record = {"id": book_id, "size": len(data), "saved_at": _now_iso(), **info}
        blob_path = self._blob_path(book_id)
        if len(data) > self.threshold:
            try:
                self.blob_dir.mkdir(parents=True, exist_ok=True)
                blob_path.write_bytes(data)
            except OSError as exc:
                logger.error("Failed to save book file %s: %s", book_id, exc)
                return False
            record["storage"] = "blob"
            record["blob"] = blob_path.name
        else:
            blob_path.unlink(missing_ok=True)
            record["storage"] = "inline"
            record["data"] = base64.b64encode(data).decode("ascii")
        with self._lock:
            payload = self._load()
            payload[book_id] = [record]
            return self._dump(payload)

    def load_file(self, book_id: str) -> bytes | None:
        record = self.get(book_id, book_id)
        if record is None:
            return None
        if record.get("storage") == "blob":
            try:
                return (self.blob_dir / str(record.get("blob"))).read_bytes()
            except OSError as exc:
                logger.error("Failed to read book file %s: %s", book_id, exc)
                return None
        data = record.get("data")
        return base64.b64decode(data) if isinstance(data, str) else None

    def delete_file(self, book_id: str) -> bool:
        self._blob_path(book_id).unlink(missing_ok=True)
        return self.remove(book_id, book_id)


@dataclass
class ReaderStores:
    """Per-session bundle of the persistence stores."""

    bookmarks: BookmarkStore
    chats: ChatStore
    files: BookFileStore
    notebooks: NotebookStore
    mindmaps: MindMapStore

    @classmethod
    def at(cls, data_dir: Path) -> "ReaderStores":
        return cls(
            bookmarks=BookmarkStore(data_dir / BOOKMARKS_FILENAME),
            chats=ChatStore(data_dir / CHATS_FILENAME),
            files=BookFileStore(data_dir / LIBRARY_FILENAME, data_dir / BLOB_DIRNAME),
            notebooks=NotebookStore(data_dir / NOTEBOOKS_FILENAME),
            mindmaps=MindMapStore(data_dir / MINDMAPS_FILENAME),
        )


__all__ = [
    "BLOB_THRESHOLD_BYTES",
    "BookFileStore",
    "BookmarkStore",
    "ChatStore",
    "JsonKeyedStore",
    "MindMapStore",
    "NotebookStore",
    "ReaderStores",
]

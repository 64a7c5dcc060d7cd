from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterator, Literal, Mapping

from .archive import EpubArchive
from .chapter import (
    Chapter,
    ChapterContent,
    collect_styles,
    directory_of,
    extract_body,
    fallback_title,
    rewrite_resource_refs,
)
from .errors import ChapterRangeError, EpubFormatError, EpubNotFoundError
from .navigation import TocNode, find_spine_index, find_toc_label, parse_toc
from .xmltree import XmlNode, decode_xml, text_of

logger = logging.getLogger(__name__)

EPUB_MIMETYPE = "application/epub+zip"
MIMETYPE_PATH = "mimetype"
CONTAINER_PATH = "META-INF/container.xml"

ResourceMode = Literal["none", "data-url"]

# Dublin Core element -> metadata field
_DC_FIELDS = {
    "title": "title",
    "creator": "author",
    "publisher": "publisher",
    "language": "language",
    "identifier": "identifier",
    "description": "description",
    "date": "date",
    "rights": "rights",
}


@dataclass(frozen=True)
class ReaderOptions:
    resource_mode: ResourceMode = "none"
    nested_nav_toc: bool = False

    def __post_init__(self) -> None:
        if self.resource_mode not in ("none", "data-url"):
            raise ValueError(f"Unknown resource mode: {self.resource_mode!r}")


@dataclass(frozen=True)
class BookMetadata:
    title: str | None = None
    author: str | None = None
    publisher: str | None = None
    language: str | None = None
    identifier: str | None = None
    description: str | None = None
    date: str | None = None
    rights: str | None = None
    cover: str | None = None


@dataclass(frozen=True)
class ManifestItem:
    id: str
    href: str
    media_type: str | None
    properties: frozenset[str] = field(default_factory=frozenset)
    original_href: str = ""


@dataclass(frozen=True)
class SpineItem:
    index: int
    idref: str
    href: str | None
    media_type: str | None
    linear: bool = True


@dataclass(frozen=True)
class CoverImage:
    path: str
    media_type: str | None
    data: bytes

    def as_data_url(self) -> str:
        mime = self.media_type or "image/jpeg"
        return f"data:{mime};base64,{base64.b64encode(self.data).decode('ascii')}"


def _verify_mimetype(archive: EpubArchive) -> None:
    entry = archive.entry(MIMETYPE_PATH)
    if entry is None:
        raise EpubFormatError("Invalid EPUB: missing mimetype file")
    if entry.as_text().strip() != EPUB_MIMETYPE:
        raise EpubFormatError("Invalid EPUB: incorrect mimetype")


def _find_package_path(archive: EpubArchive) -> str:
    entry = archive.entry(CONTAINER_PATH)
    if entry is None:
        raise EpubFormatError("Invalid EPUB: missing META-INF/container.xml")
    container = decode_xml(entry.as_text())
    rootfiles = container.first("rootfiles")
    candidates = rootfiles.find_all("rootfile") if rootfiles is not None else []
    full_path = candidates[0].get("full-path") if candidates else None
    if not full_path:
        raise EpubFormatError("Invalid EPUB: no rootfile found in container.xml")
    return full_path


def _parse_metadata(node: XmlNode | None) -> BookMetadata:
    if node is None:
        return BookMetadata()
    values: dict[str, str | None] = {}
    for element, name in _DC_FIELDS.items():
        values[name] = text_of(node.find_all(element))
    cover_id = None
    for meta in node.find_all("meta"):
        if meta.get("name") == "cover" and meta.get("content"):
            cover_id = meta.get("content")
            break
    return BookMetadata(cover=cover_id, **values)


def _parse_manifest(node: XmlNode | None, root_dir: str) -> dict[str, ManifestItem]:
    manifest: dict[str, ManifestItem] = {}
    if node is None:
        return manifest
    for item in node.find_all("item"):
        item_id = item.get("id")
        href = item.get("href")
        if not item_id or href is None:
            continue
        manifest[item_id] = ManifestItem(
            id=item_id,
            href=root_dir + href,
            media_type=item.get("media-type"),
            properties=frozenset((item.get("properties") or "").split()),
            original_href=href,
        )
    return manifest


def _parse_spine(
    node: XmlNode | None, manifest: Mapping[str, ManifestItem]
) -> tuple[list[SpineItem], str | None]:
    if node is None:
        return [], None
    spine: list[SpineItem] = []
    for index, itemref in enumerate(node.find_all("itemref")):
        idref = itemref.get("idref") or ""
        target = manifest.get(idref)
        if target is None:
            logger.warning("Spine entry %d references unknown manifest id %r", index, idref)
        spine.append(
            SpineItem(
                index=index,
                idref=idref,
                href=target.href if target else None,
                media_type=target.media_type if target else None,
                linear=itemref.get("linear") != "no",
            )
        )
    return spine, node.get("toc")


def _find_nav_document(
    manifest: Mapping[str, ManifestItem], toc_id: str | None
) -> ManifestItem | None:
    if toc_id and toc_id in manifest:
        return manifest[toc_id]
    for item in manifest.values():
        if "nav" in item.properties or "toc" in item.href:
            return item
    return None


class EpubBook:
    """A parsed EPUB: metadata, manifest, spine and table of contents.

    Instances come from :meth:`parse` and are read-only afterwards; every
    :meth:`get_chapter` call re-reads the archive.
    """

    def __init__(
        self,
        archive: EpubArchive,
        *,
        root_dir: str,
        package_path: str,
        metadata: BookMetadata,
        manifest: dict[str, ManifestItem],
        spine: list[SpineItem],
        toc: list[TocNode],
        options: ReaderOptions | None = None,
    ) -> None:
        self._archive = archive
        self.root_dir = root_dir
        self.package_path = package_path
        self.metadata = metadata
        self.manifest = manifest
        self.spine = spine
        self.toc = toc
        self.options = options or ReaderOptions()

    @classmethod
    def parse(cls, data: bytes, options: ReaderOptions | None = None) -> "EpubBook":
        options = options or ReaderOptions()
        archive = EpubArchive.from_bytes(data)
        logger.debug("Opened archive with %d entries", len(archive))
        _verify_mimetype(archive)
        package_path = _find_package_path(archive)
        root_dir = directory_of(package_path)

        package_entry = archive.entry(package_path)
        if package_entry is None:
            raise EpubNotFoundError(
                f"Invalid EPUB: missing package document at {package_path}",
                path=package_path,
            )
        package = decode_xml(package_entry.as_text())
        if package.tag != "package":
            raise EpubFormatError("Invalid EPUB: invalid package document structure")

        metadata = _parse_metadata(package.first("metadata"))
        manifest = _parse_manifest(package.first("manifest"), root_dir)
        spine, toc_id = _parse_spine(package.first("spine"), manifest)
        logger.debug(
            "Parsed package %s: %d manifest items, %d spine items",
            package_path,
            len(manifest),
            len(spine),
        )

        toc = cls._load_toc(archive, manifest, toc_id, root_dir, options)
        return cls(
            archive,
            root_dir=root_dir,
            package_path=package_path,
            metadata=metadata,
            manifest=manifest,
            spine=spine,
            toc=toc,
            options=options,
        )

    @classmethod
    def open(cls, path: Path | str, options: ReaderOptions | None = None) -> "EpubBook":
        return cls.parse(Path(path).read_bytes(), options)

    @staticmethod
    def _load_toc(
        archive: EpubArchive,
        manifest: Mapping[str, ManifestItem],
        toc_id: str | None,
        root_dir: str,
        options: ReaderOptions,
    ) -> list[TocNode]:
        nav_item = _find_nav_document(manifest, toc_id)
        if nav_item is None:
            logger.warning("No table of contents found")
            return []
        entry = archive.entry(nav_item.href)
        if entry is None:
            logger.warning("TOC file not found: %s", nav_item.href)
            return []
        return parse_toc(entry.as_text(), root_dir, nested=options.nested_nav_toc)

    @property
    def chapter_count(self) -> int:
        return len(self.spine)

    def get_chapter(self, index: int) -> Chapter:
        if not 0 <= index < len(self.spine):
            raise ChapterRangeError(index, len(self.spine))
        spine_item = self.spine[index]
        href = spine_item.href
        entry = self._archive.entry(href) if href is not None else None
        if entry is None:
            raise EpubNotFoundError(f"Chapter file not found: {href}", path=href)

        markup = entry.as_text()
        chapter_dir = directory_of(entry.name)
        styles = collect_styles(markup, chapter_dir, self._archive)
        body = extract_body(markup)
        if self.options.resource_mode == "data-url":
            body = rewrite_resource_refs(body, chapter_dir, self.resource_data_url)
        return Chapter(
            index=index,
            title=self.chapter_title(index),
            content=ChapterContent(html=body, styles=styles),
            href=href,
        )

    def iter_chapters(self) -> Iterator[Chapter]:
        for index in range(len(self.spine)):
            yield self.get_chapter(index)

    def chapter_title(self, index: int) -> str:
        href = self.spine[index].href if 0 <= index < len(self.spine) else None
        label = find_toc_label(self.toc, href) if href else None
        return label or fallback_title(index)

    def spine_index_for_href(self, href: str) -> int:
        return find_spine_index(self.spine, href)

    def media_type_for(self, path: str) -> str:
        for item in self.manifest.values():
            if item.href == path and item.media_type:
                return item.media_type
        guessed, _ = mimetypes.guess_type(path)
        return guessed or "application/octet-stream"

    def resource_data_url(self, path: str) -> str | None:
        entry = self._archive.entry(path)
        if entry is None:
            return None
        return f"data:{self.media_type_for(path)};base64,{entry.as_base64()}"

    def read_resource(self, path: str) -> bytes:
        entry = self._archive.entry(path)
        if entry is None:
            raise EpubNotFoundError(f"Resource not found: {path}", path=path)
        return entry.as_bytes()

    def _cover_candidates(self) -> Iterator[ManifestItem]:
        images = [
            item
            for item in self.manifest.values()
            if (item.media_type or "").lower().startswith("image/")
        ]
        cover_id = self.metadata.cover
        if cover_id and cover_id in self.manifest:
            yield self.manifest[cover_id]
        for item in images:
            if "cover-image" in item.properties:
                yield item
        for item in images:
            if "cover" in item.id.lower() or "cover" in item.href.lower():
                yield item
        if images:
            yield images[0]

    def cover_image(self) -> CoverImage | None:
        seen: set[str] = set()
        for item in self._cover_candidates():
            if item.href in seen:
                continue
            seen.add(item.href)
            entry = self._archive.entry(item.href)
            if entry is None:
                logger.warning("Cover image not found in archive: %s", item.href)
                continue
            return CoverImage(path=entry.name, media_type=item.media_type, data=entry.as_bytes())
        return None

    def cover_data_url(self) -> str | None:
        cover = self.cover_image()
        return cover.as_data_url() if cover else None

    def structure(self) -> dict[str, object]:
        """Plain, JSON-ready view of the parsed structure."""
        return {
            "metadata": asdict(self.metadata),
            "spine": [asdict(item) for item in self.spine],
            "toc": [node.as_payload() for node in self.toc],
            "manifest": {
                item_id: {
                    "id": item.id,
                    "href": item.href,
                    "media_type": item.media_type,
                    "properties": sorted(item.properties),
                    "original_href": item.original_href,
                }
                for item_id, item in self.manifest.items()
            },
        }

    def close(self) -> None:
        self._archive.close()


def parse_epub(data: bytes, **options: object) -> EpubBook:
    return EpubBook.parse(data, ReaderOptions(**options))  # type: ignore[arg-type]


__all__ = [
    "BookMetadata",
    "CoverImage",
    "EPUB_MIMETYPE",
    "EpubBook",
    "ManifestItem",
    "ReaderOptions",
    "SpineItem",
    "parse_epub",
]

from __future__ import annotations

import argparse
import os
import socket
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .book import EpubBook, ReaderOptions
from .errors import EpubError
from .extract import strip_html_tags
from .logging_utils import build_uvicorn_log_config, configure_cli_logging
from .navigation import TocNode
from .web import WebConfig, create_app

LIBRARY_ENV = "FOLIO_LIBRARY"
DEBUG_ENV = "FOLIO_DEBUG"


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("folio")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"folio {__version__}",
    )


def _add_reader_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--nested-toc",
        action="store_true",
        help="Keep the nesting of XHTML navigation documents instead of flattening them.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging.",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio",
        description="Read EPUB books from the terminal or serve a library over HTTP.",
        epilog="Commands: info, toc, chapter, text, cover, web. Run `folio <command> -h` for details.",
    )
    _add_version_flag(ap)
    return ap


def build_info_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="folio info", description="Show EPUB metadata and spine.")
    _add_version_flag(ap)
    ap.add_argument("epub", help="Path to the .epub file.")
    _add_reader_flags(ap)
    return ap


def build_toc_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="folio toc", description="Print the table of contents.")
    _add_version_flag(ap)
    ap.add_argument("epub", help="Path to the .epub file.")
    _add_reader_flags(ap)
    return ap


def build_chapter_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio chapter",
        description="Print the body HTML of one chapter.",
    )
    _add_version_flag(ap)
    ap.add_argument("epub", help="Path to the .epub file.")
    ap.add_argument("index", type=int, help="Zero-based spine index.")
    ap.add_argument(
        "--styles",
        action="store_true",
        help="Print the collected chapter CSS instead of the body.",
    )
    ap.add_argument(
        "--data-urls",
        action="store_true",
        help="Inline images as data URLs.",
    )
    _add_reader_flags(ap)
    return ap


def build_text_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio text",
        description="Print the plain text of a chapter, or of the whole book.",
    )
    _add_version_flag(ap)
    ap.add_argument("epub", help="Path to the .epub file.")
    ap.add_argument(
        "index",
        type=int,
        nargs="?",
        help="Zero-based spine index (default: every chapter).",
    )
    _add_reader_flags(ap)
    return ap


def build_cover_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="folio cover", description="Extract the cover image.")
    _add_version_flag(ap)
    ap.add_argument("epub", help="Path to the .epub file.")
    ap.add_argument(
        "-o",
        "--output",
        help="Output image path (default: next to the EPUB, named after the cover file).",
    )
    _add_reader_flags(ap)
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio web",
        description="Serve a directory of EPUB files through the JSON reader API.",
    )
    _add_version_flag(ap)
    ap.add_argument(
        "root",
        nargs="?",
        help=f"Directory containing .epub files (default: ${LIBRARY_ENV}).",
    )
    ap.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host interface for the web server (default: 0.0.0.0).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2047,
        help="Port for the web server (default: 2047).",
    )
    ap.add_argument(
        "--data-dir",
        help="Directory for bookmarks and chats (default: <root>/.folio).",
    )
    ap.add_argument(
        "--data-urls",
        action="store_true",
        help="Inline chapter images as data URLs.",
    )
    ap.add_argument(
        "--paragraph-numbers",
        action="store_true",
        help="Number paragraphs in served chapters by default.",
    )
    _add_reader_flags(ap)
    return ap


def _debug_enabled(args: argparse.Namespace) -> bool:
    if getattr(args, "debug", False):
        return True
    return os.environ.get(DEBUG_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def _open_book(args: argparse.Namespace, *, data_urls: bool = False) -> EpubBook:
    path = Path(args.epub).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"EPUB not found: {path}")
    options = ReaderOptions(
        resource_mode="data-url" if data_urls else "none",
        nested_nav_toc=args.nested_toc,
    )
    return EpubBook.open(path, options)


def _add_toc_nodes(tree: Tree, nodes: list[TocNode]) -> None:
    for node in nodes:
        branch = tree.add(f"{escape(node.label or '(untitled)')} [dim]{escape(node.href)}[/dim]")
        _add_toc_nodes(branch, node.children)


def _run_info(args: argparse.Namespace, console: Console) -> int:
    book = _open_book(args)
    try:
        meta = Table(show_header=False, box=None)
        meta.add_column(style="bold")
        meta.add_column()
        for name, value in vars(book.metadata).items():
            if value:
                meta.add_row(name, escape(value))
        meta.add_row("package", book.package_path)
        console.print(meta)

        spine = Table(title=f"Spine ({book.chapter_count})")
        spine.add_column("#", justify="right")
        spine.add_column("Title")
        spine.add_column("Href")
        for item in book.spine:
            spine.add_row(
                str(item.index),
                escape(book.chapter_title(item.index)),
                escape(item.href or "-"),
            )
        console.print(spine)
    finally:
        book.close()
    return 0


def _run_toc(args: argparse.Namespace, console: Console) -> int:
    book = _open_book(args)
    try:
        if not book.toc:
            console.print("[yellow]No table of contents.[/yellow]")
            return 0
        tree = Tree(escape(book.metadata.title or Path(args.epub).stem))
        _add_toc_nodes(tree, book.toc)
        console.print(tree)
    finally:
        book.close()
    return 0


def _run_chapter(args: argparse.Namespace) -> int:
    book = _open_book(args, data_urls=args.data_urls)
    try:
        chapter = book.get_chapter(args.index)
    finally:
        book.close()
    sys.stdout.write(chapter.content.styles if args.styles else chapter.content.html)
    sys.stdout.write("\n")
    return 0


def _run_text(args: argparse.Namespace) -> int:
    book = _open_book(args)
    try:
        if args.index is not None:
            chapters = [book.get_chapter(args.index)]
        else:
            chapters = list(book.iter_chapters())
    finally:
        book.close()
    for chapter in chapters:
        if args.index is None:
            sys.stdout.write(f"--- {chapter.title} ---\n\n")
        sys.stdout.write(strip_html_tags(chapter.content.html))
        sys.stdout.write("\n\n" if args.index is None else "\n")
    return 0


def _run_cover(args: argparse.Namespace, console: Console) -> int:
    book = _open_book(args)
    try:
        cover = book.cover_image()
    finally:
        book.close()
    if cover is None:
        console.print("[yellow]No cover image found.[/yellow]")
        return 1
    if args.output:
        output = Path(args.output).expanduser()
    else:
        output = Path(args.epub).expanduser().with_name(Path(cover.path).name)
    output.write_bytes(cover.data)
    console.print(f"Wrote cover to {output}")
    return 0


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def _run_web(args: argparse.Namespace) -> int:
    root_arg = args.root or os.environ.get(LIBRARY_ENV)
    if not root_arg:
        raise SystemExit(f"No library directory given and ${LIBRARY_ENV} is not set.")
    root = Path(root_arg).expanduser().resolve()
    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else None
    config = WebConfig(
        root=root,
        data_dir=data_dir,
        resource_mode="data-url" if args.data_urls else "none",
        nested_nav_toc=args.nested_toc,
        paragraph_numbers=args.paragraph_numbers,
    )
    app = create_app(config)
    url = f"http://{_resolve_local_ip(args.host)}:{args.port}/api/books"
    print(f"Serving folio library from {root}")
    print(f"API URL: {url}")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_config=build_uvicorn_log_config(_debug_enabled(args)),
    )
    return 0


_COMMANDS = {
    "info": build_info_parser,
    "toc": build_toc_parser,
    "chapter": build_chapter_parser,
    "text": build_text_parser,
    "cover": build_cover_parser,
    "web": build_web_parser,
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] not in _COMMANDS:
        parser = build_parser()
        if not argv:
            parser.print_help()
            return 0
        parser.parse_args(argv)
        parser.error(f"unknown command: {argv[0]}")

    command = argv[0]
    args = _COMMANDS[command]().parse_args(argv[1:])
    configure_cli_logging(_debug_enabled(args))
    if command == "web":
        return _run_web(args)

    console = Console()
    try:
        if command == "info":
            return _run_info(args, console)
        if command == "toc":
            return _run_toc(args, console)
        if command == "chapter":
            return _run_chapter(args)
        if command == "text":
            return _run_text(args)
        return _run_cover(args, console)
    except (EpubError, OSError) as exc:
        Console(stderr=True).print(f"[red]error:[/red] {escape(str(exc))}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import os
import socket
import sys
import threading
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .core import BookUnreadable, NoReadableContent, open_book
from .library import BookNotFound, Library, PersistenceWriteFailed, default_library_root
from .logging_utils import build_log_config, configure_logging
from .orp import format_time, split_at_orp
from .playback import DEFAULT_WPM, MAX_WPM, MIN_WPM, PlaybackEngine, PlaybackState
from .progress import DEFAULT_SAVE_INTERVAL, Position, compute_percentage
from .session import open_session
from .uploads import UploadRejected, import_book
from .web import WebConfig, create_app

SAVE_INTERVAL_ENV_VAR = "SWIFTREAD_SAVE_INTERVAL"


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover - defensive
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("swiftread")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"swiftread {__version__}",
    )


def _add_common_flags(parser: argparse.ArgumentParser, *, root: bool = True) -> None:
    if root:
        parser.add_argument(
            "--root",
            help=f"Library directory (default: ${{SWIFTREAD_LIBRARY}} or {Path('~/.swiftread')}).",
        )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging (skipped sections, progress saves).",
    )


def _default_save_interval() -> float:
    raw = os.environ.get(SAVE_INTERVAL_ENV_VAR)
    if raw:
        try:
            value = float(raw)
            if value > 0:
                return value
        except ValueError:
            pass
    return DEFAULT_SAVE_INTERVAL


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="swiftread",
        description="Speed-read EPUB books word by word. Commands: web, import, list, chapters, read.",
    )
    _add_version_flag(ap)
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="swiftread web",
        description="Serve the library and reading engine over HTTP.",
    )
    _add_version_flag(ap)
    _add_common_flags(ap)
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
        "--wpm",
        type=int,
        default=DEFAULT_WPM,
        help=f"Initial reading speed for new sessions ({MIN_WPM}-{MAX_WPM}, default: {DEFAULT_WPM}).",
    )
    ap.add_argument(
        "--save-interval",
        type=float,
        default=None,
        help="Seconds between automatic progress saves (default: 5, or $SWIFTREAD_SAVE_INTERVAL).",
    )
    ap.add_argument(
        "--settle-delay",
        type=float,
        default=1.0,
        help="Pause in seconds before automatically moving to the next chapter (default: 1.0).",
    )
    return ap


def build_import_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="swiftread import", description="Add EPUB files to the library.")
    _add_version_flag(ap)
    _add_common_flags(ap)
    ap.add_argument("paths", nargs="+", help="EPUB files to import.")
    return ap


def build_list_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="swiftread list", description="List books in the library.")
    _add_version_flag(ap)
    _add_common_flags(ap)
    return ap


def build_chapters_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="swiftread chapters",
        description="Show the chapters extracted from an EPUB file or library book.",
    )
    _add_version_flag(ap)
    _add_common_flags(ap)
    ap.add_argument("target", help="Path to an .epub file, or a library book id.")
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="swiftread read",
        description="Speed-read in the terminal. Press Ctrl+C to stop; library books resume where you left off.",
    )
    _add_version_flag(ap)
    _add_common_flags(ap)
    ap.add_argument("target", help="Path to an .epub file, or a library book id.")
    ap.add_argument(
        "--wpm",
        type=int,
        default=DEFAULT_WPM,
        help=f"Reading speed in words per minute ({MIN_WPM}-{MAX_WPM}, default: {DEFAULT_WPM}).",
    )
    ap.add_argument(
        "--chapter",
        type=int,
        help="Start at this chapter (1-based) instead of the saved position.",
    )
    return ap


def _library_from_args(args: argparse.Namespace) -> Library:
    root = Path(args.root).expanduser().resolve() if getattr(args, "root", None) else default_library_root()
    library = Library(root)
    library.ensure_root()
    return library


def _run_import(args: argparse.Namespace) -> int:
    library = _library_from_args(args)
    failures = 0
    for raw_path in args.paths:
        path = Path(raw_path).expanduser()
        try:
            data = path.read_bytes()
        except OSError as exc:
            print(f"[swiftread] Cannot read {path}: {exc}", file=sys.stderr)
            failures += 1
            continue
        try:
            book = import_book(library, data, path.name)
        except (UploadRejected, PersistenceWriteFailed) as exc:
            print(f"[swiftread] {path.name}: {exc}", file=sys.stderr)
            failures += 1
            continue
        print(f"{book.id}  {book.title} by {book.author}")
    return 1 if failures else 0


def _run_list(args: argparse.Namespace) -> int:
    library = _library_from_args(args)
    books = library.list_books()
    console = Console()
    if not books:
        console.print(f"No books in {library.root}")
        return 0
    table = Table(title=f"Library: {library.root}")
    table.add_column("ID", no_wrap=True)
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Progress", justify="right")
    for book in books:
        table.add_row(book.id, book.title, book.author, f"{book.progress.percentage:.1f}%")
    console.print(table)
    return 0


def _load_target_bytes(args: argparse.Namespace) -> tuple[bytes, str | None]:
    path = Path(args.target).expanduser()
    if path.suffix.lower() == ".epub" or path.exists():
        try:
            return path.read_bytes(), None
        except OSError as exc:
            raise SystemExit(f"Cannot read {path}: {exc}") from exc
    library = _library_from_args(args)
    data = library.load_raw_bytes(args.target)
    if data is None:
        raise SystemExit("Book not found or unreadable.")
    return data, args.target


def _run_chapters(args: argparse.Namespace) -> int:
    data, _ = _load_target_bytes(args)
    try:
        opened = open_book(data)
    except (BookUnreadable, NoReadableContent) as exc:
        raise SystemExit(str(exc)) from exc
    console = Console()
    title = opened.metadata.title or Path(args.target).stem
    table = Table(title=f"{title} ({opened.total_words} words)")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Source")
    table.add_column("Words", justify="right")
    table.add_column("At 300 wpm", justify="right")
    for index, chapter in enumerate(opened.chapters, start=1):
        table.add_row(
            str(index),
            chapter.title,
            chapter.href,
            str(chapter.word_count),
            format_time(chapter.word_count / DEFAULT_WPM * 60),
        )
    console.print(table)
    return 0


def _render_frame(engine: PlaybackEngine, state: PlaybackState) -> Group:
    before, pivot, after = split_at_orp(engine.current_word)
    # Pad so the ORP character stays in a fixed column.
    word = Text(" " * max(0, 12 - len(before)))
    word.append(before)
    word.append(pivot, style="bold red")
    word.append(after)
    chapter = engine.current_chapter
    percentage = compute_percentage(state.position, engine.chapters)
    status = Text(
        f"{chapter.title if chapter else ''}  ·  "
        f"{state.chapter_index + 1}/{len(engine.chapters)}  ·  "
        f"{format_time(engine.elapsed_seconds)} / {format_time(engine.total_seconds)}  ·  "
        f"{state.wpm} wpm  ·  {percentage:.1f}%",
        style="dim",
    )
    return Group(Text(""), word, Text(""), status)


def _play_in_terminal(engine: PlaybackEngine) -> None:
    console = Console()
    finished = threading.Event()
    with Live(_render_frame(engine, engine.snapshot()), console=console, transient=False) as live:

        def _on_state(state: PlaybackState) -> None:
            live.update(_render_frame(engine, state))
            if not state.is_playing:
                finished.set()

        unsubscribe = engine.on_position_change(_on_state)
        try:
            if not engine.play():
                return
            while not finished.wait(0.25):
                pass
        except KeyboardInterrupt:
            engine.pause()
        finally:
            unsubscribe()


def _run_read(args: argparse.Namespace) -> int:
    data, book_id = _load_target_bytes(args)
    if book_id is not None:
        library = _library_from_args(args)
        try:
            session = open_session(
                book_id,
                library,
                wpm=args.wpm,
                save_interval=_default_save_interval(),
            )
        except (BookNotFound, BookUnreadable, NoReadableContent) as exc:
            raise SystemExit("Book not found or unreadable.") from exc
        with session:
            if args.chapter:
                session.engine.go_to_chapter(args.chapter - 1)
            _play_in_terminal(session.engine)
        saved = session.last_saved
        if saved is not None:
            print(f"Saved position: chapter {saved.chapter_index + 1}, {saved.percentage:.1f}% read.")
        return 0

    try:
        opened = open_book(data)
    except (BookUnreadable, NoReadableContent) as exc:
        raise SystemExit(str(exc)) from exc
    start = Position(max(0, (args.chapter or 1) - 1), 0)
    engine = PlaybackEngine(opened.chapters, wpm=args.wpm, position=start)
    try:
        _play_in_terminal(engine)
    finally:
        engine.close()
    return 0


def _run_web(args: argparse.Namespace) -> None:
    library = _library_from_args(args)
    save_interval = args.save_interval if args.save_interval else _default_save_interval()
    config = WebConfig(
        root=library.root,
        wpm=args.wpm,
        save_interval=save_interval,
        chapter_settle_delay=args.settle_delay,
    )
    app = create_app(config)
    public_ip = _resolve_local_ip(args.host)
    url = f"http://{public_ip}:{args.port}/"
    print(f"Serving swiftread library from {library.root}")
    print(f"API URL: {url}api/books")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="debug" if args.debug else "info",
        log_config=build_log_config(args.debug),
    )


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


_COMMANDS = {
    "import": (build_import_parser, _run_import),
    "list": (build_list_parser, _run_list),
    "chapters": (build_chapters_parser, _run_chapters),
    "read": (build_read_parser, _run_read),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] == "web":
        web_args = build_web_parser().parse_args(argv[1:])
        _run_web(web_args)
        return 0
    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        configure_logging(bool(args.debug))
        return run(args)

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    raise SystemExit(f"Unknown command: {argv[0]}. Use one of: web, {', '.join(_COMMANDS)}.")


if __name__ == "__main__":
    raise SystemExit(main())

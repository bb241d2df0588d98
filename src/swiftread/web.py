from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from fastapi import Body, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response

from .core import BookUnreadable, Chapter, NoReadableContent, OpenedBook, open_book
from .library import Book, BookNotFound, Library, PersistenceWriteFailed
from .playback import DEFAULT_CHAPTER_SETTLE_DELAY, DEFAULT_WPM, Scheduler
from .progress import DEFAULT_SAVE_INTERVAL, Position, build_progress, restore_position
from .session import ReadingSession, open_session
from .uploads import UPLOAD_REJECTED_MESSAGE, UploadRejected, import_book

__all__ = [
    "BOOK_UNAVAILABLE_MESSAGE",
    "WebConfig",
    "create_app",
]

BOOK_UNAVAILABLE_MESSAGE = "Book not found or unreadable."
MAX_UPLOAD_BYTES = 200 * 1024 * 1024


@dataclass(slots=True)
class WebConfig:
    root: Path
    wpm: int = DEFAULT_WPM
    save_interval: float = DEFAULT_SAVE_INTERVAL
    chapter_settle_delay: float = DEFAULT_CHAPTER_SETTLE_DELAY
    scheduler: Scheduler | None = None


def _book_payload(book: Book) -> dict[str, object]:
    payload = book.as_payload()
    payload.pop("version", None)
    payload["coverUrl"] = f"/api/books/{book.id}/cover" if book.cover_file else None
    return payload


def _chapter_payload(chapter: Chapter, *, include_words: bool) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": chapter.id,
        "title": chapter.title,
        "href": chapter.href,
        "wordCount": chapter.word_count,
    }
    if include_words:
        payload["content"] = chapter.content
        payload["words"] = list(chapter.words)
    return payload


def _int_field(payload: dict[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HTTPException(status_code=400, detail=f"{key} must be a number.")
    return int(value)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    close_sessions = getattr(app.state, "close_sessions", None)
    if close_sessions is not None:
        close_sessions()


def create_app(config: WebConfig) -> FastAPI:
    root = config.root.expanduser().resolve()
    library = Library(root)
    library.ensure_root()

    app = FastAPI(title="swiftread", lifespan=_lifespan)
    app.state.config = config
    app.state.library = library

    session_lock = threading.Lock()
    sessions: dict[str, ReadingSession] = {}
    app.state.sessions = sessions

    def _require_book(book_id: str) -> Book:
        book = library.load_book(book_id)
        if book is None:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE)
        return book

    def _open_chapters(book_id: str, book: Book) -> OpenedBook:
        data = library.load_raw_bytes(book_id)
        if data is None:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE)
        try:
            return open_book(data, progress=book.progress)
        except (BookUnreadable, NoReadableContent) as exc:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE) from exc

    def _require_session(book_id: str) -> ReadingSession:
        with session_lock:
            session = sessions.get(book_id)
        if session is None:
            raise HTTPException(status_code=404, detail="No open reading session for this book.")
        return session

    def _close_session(book_id: str) -> bool:
        with session_lock:
            session = sessions.pop(book_id, None)
        if session is None:
            return False
        session.close()
        return True

    def _close_all_sessions() -> None:
        with session_lock:
            open_ids = list(sessions)
        for book_id in open_ids:
            _close_session(book_id)

    app.state.close_sessions = _close_all_sessions

    @app.get("/api/books")
    def api_books() -> JSONResponse:
        return JSONResponse({"books": [_book_payload(book) for book in library.list_books()]})

    @app.post("/api/books")
    async def api_upload_book(file: UploadFile = File(...)) -> JSONResponse:
        try:
            data = await file.read(MAX_UPLOAD_BYTES + 1)
        finally:
            await file.close()
        if len(data) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=400, detail=UPLOAD_REJECTED_MESSAGE)
        try:
            book = import_book(library, data, file.filename)
        except UploadRejected as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except PersistenceWriteFailed as exc:
            raise HTTPException(status_code=500, detail=f"Failed to save upload: {exc}") from exc
        return JSONResponse({"book": _book_payload(book)})

    @app.get("/api/books/{book_id}")
    def api_book(book_id: str) -> JSONResponse:
        return JSONResponse({"book": _book_payload(_require_book(book_id))})

    @app.delete("/api/books/{book_id}")
    def api_delete_book(book_id: str) -> JSONResponse:
        _close_session(book_id)
        deleted = library.delete_book(book_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE)
        return JSONResponse({"deleted": True, "book": book_id})

    @app.get("/api/books/{book_id}/cover")
    def api_cover(book_id: str) -> Response:
        cover = library.load_cover(book_id)
        if cover is None:
            raise HTTPException(status_code=404, detail="Cover not found")
        return Response(content=cover.data, media_type=cover.media_type or "application/octet-stream")

    @app.get("/api/books/{book_id}/chapters")
    def api_chapters(book_id: str, words: bool = True) -> JSONResponse:
        book = _require_book(book_id)
        opened = _open_chapters(book_id, book)
        position = opened.initial_position
        return JSONResponse(
            {
                "book": _book_payload(book),
                "chapters": [_chapter_payload(ch, include_words=words) for ch in opened.chapters],
                "initialPosition": {
                    "chapterIndex": position.chapter_index,
                    "wordIndex": position.word_index,
                },
                "totalWords": opened.total_words,
            }
        )

    @app.put("/api/books/{book_id}/progress")
    def api_save_progress(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _require_book(book_id)
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        requested = Position(_int_field(payload, "chapterIndex"), _int_field(payload, "wordIndex"))
        opened = _open_chapters(book_id, book)
        position = restore_position(requested, opened.chapters)
        progress = build_progress(position, opened.chapters)
        try:
            updated = library.save_progress(book_id, progress)
        except BookNotFound as exc:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE) from exc
        except PersistenceWriteFailed as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return JSONResponse({"book": _book_payload(updated)})

    @app.post("/api/books/{book_id}/session")
    def api_open_session(book_id: str, payload: dict[str, object] | None = Body(None)) -> JSONResponse:
        _require_book(book_id)
        wpm = config.wpm
        if isinstance(payload, dict) and "wpm" in payload:
            wpm = _int_field(payload, "wpm")
        _close_session(book_id)
        try:
            session = open_session(
                book_id,
                library,
                scheduler=config.scheduler,
                wpm=wpm,
                save_interval=config.save_interval,
                chapter_settle_delay=config.chapter_settle_delay,
            )
        except (BookNotFound, BookUnreadable, NoReadableContent) as exc:
            raise HTTPException(status_code=404, detail=BOOK_UNAVAILABLE_MESSAGE) from exc
        session.start()
        with session_lock:
            sessions[book_id] = session
        return JSONResponse({"session": session.state_payload()})

    @app.get("/api/books/{book_id}/session")
    def api_session_state(book_id: str) -> JSONResponse:
        return JSONResponse({"session": _require_session(book_id).state_payload()})

    @app.delete("/api/books/{book_id}/session")
    def api_close_session(book_id: str) -> JSONResponse:
        if not _close_session(book_id):
            raise HTTPException(status_code=404, detail="No open reading session for this book.")
        return JSONResponse({"closed": True, "book": _book_payload(_require_book(book_id))})

    @app.post("/api/books/{book_id}/session/{command}")
    def api_session_command(
        book_id: str,
        command: str,
        payload: dict[str, object] | None = Body(None),
    ) -> JSONResponse:
        session = _require_session(book_id)
        engine = session.engine
        body = payload if isinstance(payload, dict) else {}
        if command == "play":
            engine.play()
        elif command == "pause":
            engine.pause()
        elif command == "toggle":
            engine.toggle()
        elif command == "seek":
            engine.seek(_int_field(body, "index"))
        elif command == "skip":
            engine.skip(_int_field(body, "delta"))
        elif command == "speed":
            engine.set_speed(_int_field(body, "wpm"))
        elif command == "faster":
            engine.speed_up()
        elif command == "slower":
            engine.slow_down()
        elif command == "next-chapter":
            engine.next_chapter()
        elif command == "prev-chapter":
            engine.prev_chapter()
        elif command == "chapter":
            engine.go_to_chapter(_int_field(body, "index"))
        else:
            raise HTTPException(status_code=400, detail=f"Unknown command: {command}")
        return JSONResponse({"session": session.state_payload()})

    return app

from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

import pytest
from fastapi import HTTPException, UploadFile

from swiftread.library import Library
from swiftread.playback import ManualScheduler
from swiftread.uploads import UPLOAD_REJECTED_MESSAGE, import_book
from swiftread.web import BOOK_UNAVAILABLE_MESSAGE, WebConfig, create_app


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


def _json(response) -> dict:
    return json.loads(response.body)


@pytest.fixture
def app_env(tmp_path: Path, sample_epub: bytes):
    scheduler = ManualScheduler()
    config = WebConfig(root=tmp_path / "library", save_interval=60, scheduler=scheduler)
    app = create_app(config)
    book = import_book(Library(config.root), sample_epub, "sample.epub")
    yield app, book, scheduler
    app.state.close_sessions()


def test_upload_endpoint_imports_book(tmp_path: Path, sample_epub: bytes) -> None:
    app = create_app(WebConfig(root=tmp_path))
    upload = _find_route(app, "/api/books", "POST")
    response = asyncio.run(upload(UploadFile(file=io.BytesIO(sample_epub), filename="sample.epub")))
    payload = _json(response)["book"]
    assert payload["title"] == "Test Book"
    assert payload["coverUrl"] == f"/api/books/{payload['id']}/cover"
    assert payload["progress"]["percentage"] == 0.0
    listing = _json(_find_route(app, "/api/books", "GET")())
    assert [book["id"] for book in listing["books"]] == [payload["id"]]


def test_upload_endpoint_rejects_invalid_file(tmp_path: Path) -> None:
    app = create_app(WebConfig(root=tmp_path))
    upload = _find_route(app, "/api/books", "POST")
    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(upload(UploadFile(file=io.BytesIO(b"junk"), filename="junk.epub")))
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == UPLOAD_REJECTED_MESSAGE


def test_chapters_endpoint_lists_words_and_initial_position(app_env) -> None:
    app, book, _ = app_env
    chapters = _find_route(app, "/api/books/{book_id}/chapters", "GET")
    payload = _json(chapters(book.id, words=True))
    assert [chapter["title"] for chapter in payload["chapters"]] == ["Chapter One", "Chapter Two"]
    assert payload["chapters"][1]["words"] == ["The", "end", "came", "quickly."]
    assert payload["initialPosition"] == {"chapterIndex": 0, "wordIndex": 0}
    assert payload["totalWords"] == 10
    summary = _json(chapters(book.id, words=False))
    assert "words" not in summary["chapters"][0]


def test_progress_endpoint_clamps_and_saves(app_env) -> None:
    app, book, _ = app_env
    save = _find_route(app, "/api/books/{book_id}/progress", "PUT")
    payload = _json(save(book.id, {"chapterIndex": 1, "wordIndex": 99}))
    progress = payload["book"]["progress"]
    assert (progress["chapterIndex"], progress["wordIndex"]) == (1, 3)
    assert progress["percentage"] == pytest.approx(90.0)
    assert payload["book"]["lastReadAt"] is not None
    with pytest.raises(HTTPException) as excinfo:
        save(book.id, {"chapterIndex": "one", "wordIndex": 0})
    assert excinfo.value.status_code == 400


def test_unknown_book_is_404(app_env) -> None:
    app, _, _ = app_env
    get_book = _find_route(app, "/api/books/{book_id}", "GET")
    with pytest.raises(HTTPException) as excinfo:
        get_book("does-not-exist")
    assert excinfo.value.status_code == 404
    assert excinfo.value.detail == BOOK_UNAVAILABLE_MESSAGE


def test_session_commands_drive_the_engine(app_env) -> None:
    app, book, scheduler = app_env
    open_session = _find_route(app, "/api/books/{book_id}/session", "POST")
    command = _find_route(app, "/api/books/{book_id}/session/{command}", "POST")
    state = _json(open_session(book.id, None))["session"]
    assert state["word"] == "Opening"
    assert state["chapterTitle"] == "Chapter One"

    state = _json(command(book.id, "play", None))["session"]
    assert state["isPlaying"] is True
    scheduler.advance(0.4)
    state = _json(_find_route(app, "/api/books/{book_id}/session", "GET")(book.id))["session"]
    assert state["wordIndex"] == 2

    state = _json(command(book.id, "seek", {"index": -5}))["session"]
    assert state["wordIndex"] == 0
    assert state["isPlaying"] is True
    state = _json(command(book.id, "speed", {"wpm": 5000}))["session"]
    assert state["wpm"] == 1200
    state = _json(command(book.id, "next-chapter", None))["session"]
    assert state["chapterIndex"] == 1
    assert state["isPlaying"] is False

    with pytest.raises(HTTPException) as excinfo:
        command(book.id, "rewind", None)
    assert excinfo.value.status_code == 400

    closed = _json(_find_route(app, "/api/books/{book_id}/session", "DELETE")(book.id))
    assert closed["book"]["progress"]["chapterIndex"] == 1


def test_command_without_session_is_404(app_env) -> None:
    app, book, _ = app_env
    command = _find_route(app, "/api/books/{book_id}/session/{command}", "POST")
    with pytest.raises(HTTPException) as excinfo:
        command(book.id, "play", None)
    assert excinfo.value.status_code == 404


def test_cover_and_delete(app_env) -> None:
    app, book, _ = app_env
    cover = _find_route(app, "/api/books/{book_id}/cover", "GET")(book.id)
    assert cover.media_type == "image/png"
    assert cover.body.startswith(b"\x89PNG")
    deleted = _json(_find_route(app, "/api/books/{book_id}", "DELETE")(book.id))
    assert deleted == {"deleted": True, "book": book.id}
    assert Library(app.state.library.root).load_book(book.id) is None

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass, field

import pytest

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

XHTML_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><title>{title}</title><style>p {{ color: red; }}</style></head>
<body>{body}</body>
</html>
"""


@dataclass
class SpineItem:
    href: str
    body: str | None = None
    media_type: str = "application/xhtml+xml"
    raw: str | None = None
    include_file: bool = True


@dataclass
class EpubLayout:
    items: list[SpineItem]
    title: str | None = "Test Book"
    author: str | None = "Test Author"
    nav: list[tuple[str, str]] | None = None
    ncx: list[tuple[str, str]] | None = None
    cover: bytes | None = None
    extra: dict[str, str] = field(default_factory=dict)


def _nav_xhtml(entries: list[tuple[str, str]]) -> str:
    links = "".join(f'<li><a href="{href}">{label}</a></li>' for href, label in entries)
    body = f'<nav epub:type="toc" id="toc"><h1>Contents</h1><ol>{links}</ol></nav>'
    return XHTML_TEMPLATE.format(title="Contents", body=body)


def _ncx_xml(entries: list[tuple[str, str]]) -> str:
    points = "".join(
        f'<navPoint id="np{index}" playOrder="{index}">'
        f"<navLabel><text>{label}</text></navLabel>"
        f'<content src="{href}"/></navPoint>'
        for index, (href, label) in enumerate(entries, start=1)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">'
        f"<navMap>{points}</navMap></ncx>"
    )


def build_epub(layout: EpubLayout) -> bytes:
    manifest: list[str] = []
    spine: list[str] = []
    metadata: list[str] = []
    if layout.title is not None:
        metadata.append(f"<dc:title>{layout.title}</dc:title>")
    if layout.author is not None:
        metadata.append(f"<dc:creator>{layout.author}</dc:creator>")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        for index, item in enumerate(layout.items, start=1):
            item_id = f"item{index}"
            manifest.append(f'<item id="{item_id}" href="{item.href}" media-type="{item.media_type}"/>')
            spine.append(f'<itemref idref="{item_id}"/>')
            if not item.include_file:
                continue
            if item.raw is not None:
                content = item.raw
            else:
                content = XHTML_TEMPLATE.format(title=f"Title {index}", body=item.body or "")
            zf.writestr(f"OEBPS/{item.href}", content)
        if layout.nav is not None:
            manifest.append('<item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>')
            zf.writestr("OEBPS/nav.xhtml", _nav_xhtml(layout.nav))
        spine_toc = ""
        if layout.ncx is not None:
            manifest.append('<item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>')
            zf.writestr("OEBPS/toc.ncx", _ncx_xml(layout.ncx))
            spine_toc = ' toc="ncx"'
        if layout.cover is not None:
            manifest.append('<item id="cover-img" href="images/cover.png" media-type="image/png"/>')
            metadata.append('<meta name="cover" content="cover-img"/>')
            zf.writestr("OEBPS/images/cover.png", layout.cover)
        for name, content in layout.extra.items():
            zf.writestr(name, content)
        opf = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="bookid">'
            f'<metadata xmlns:dc="http://purl.org/dc/elements/1.1/">{"".join(metadata)}</metadata>'
            f'<manifest>{"".join(manifest)}</manifest>'
            f'<spine{spine_toc}>{"".join(spine)}</spine>'
            "</package>"
        )
        zf.writestr("OEBPS/content.opf", opf)
    return buffer.getvalue()


def words_body(count: int, prefix: str = "word") -> str:
    return "<p>" + " ".join(f"{prefix}{index}" for index in range(count)) + "</p>"


@pytest.fixture
def sample_epub() -> bytes:
    """Two chapters with a nav document, a stylesheet in the spine and a cover image."""
    return build_epub(
        EpubLayout(
            items=[
                SpineItem("text/ch1.xhtml", "<h1>Opening</h1><p>It was a dark night.</p>"),
                SpineItem("styles/book.css", raw="p { margin: 0; }", media_type="text/css"),
                SpineItem("text/ch2.xhtml", "<p>The end came quickly.</p>"),
            ],
            nav=[("text/ch1.xhtml", "Chapter One"), ("text/ch2.xhtml#start", "Chapter Two")],
            cover=b"\x89PNG\r\n\x1a\nfake",
        )
    )


def corrupt_entry(data: bytes, name: str) -> bytes:
    """Flip one payload byte of a stored archive member so its CRC check fails."""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        info = zf.getinfo(name)
    offset = info.header_offset
    name_length = int.from_bytes(data[offset + 26 : offset + 28], "little")
    extra_length = int.from_bytes(data[offset + 28 : offset + 30], "little")
    start = offset + 30 + name_length + extra_length
    target = start + min(5, info.compress_size - 1)
    damaged = bytearray(data)
    damaged[target] ^= 0xFF
    return bytes(damaged)

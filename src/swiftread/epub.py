from __future__ import annotations

import io
import logging
import posixpath
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from urllib.parse import unquote

from bs4 import BeautifulSoup, Tag  # type: ignore

__all__ = [
    "BookMetadata",
    "ContentUnit",
    "CoverImage",
    "EpubDocument",
    "NavItem",
    "UnitRenderError",
    "UnreadableDocument",
    "open_document",
]

logger = logging.getLogger(__name__)

HTML_EXTS = (".xhtml", ".html", ".htm")
HTML_MEDIA_TYPES = {"application/xhtml+xml", "text/html"}
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
DC_NS = "http://purl.org/dc/elements/1.1/"
CONTAINER_NS = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}


class UnreadableDocument(RuntimeError):
    """Raised when the bytes are not an EPUB container we can open."""


class UnitRenderError(RuntimeError):
    """Raised when a spine item cannot be rendered to markup."""


@dataclass(slots=True)
class BookMetadata:
    title: str | None
    author: str | None


@dataclass(slots=True)
class NavItem:
    href: str
    label: str
    children: list["NavItem"] = field(default_factory=list)


@dataclass(slots=True)
class CoverImage:
    path: str
    media_type: str | None
    data: bytes


@dataclass(slots=True)
class _ManifestItem:
    item_id: str
    href: str
    path: str
    media_type: str | None
    properties: str | None


def _zip_read_text(zf: zipfile.ZipFile, name: str) -> str:
    raw = zf.read(name)
    for enc in ("utf-8-sig", "cp1252"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _get_attr(elem: ET.Element, name: str) -> str | None:
    for attr, value in elem.attrib.items():
        if _strip_tag(attr) == name:
            return value
    return None


def _resolve_relative_path(base_file: str, href: str) -> str:
    base = str(PurePosixPath(base_file).parent)
    if base not in ("", ".", "/"):
        combined = posixpath.join(base, href)
    else:
        combined = href
    return posixpath.normpath(combined)


def _relative_to_dir(path: str, directory: str) -> str:
    if directory in ("", ".", "/"):
        return path
    return posixpath.relpath(path, directory)


def _split_href_fragment(href: str) -> tuple[str, str | None]:
    if "#" in href:
        base, frag = href.split("#", 1)
        return base, unquote(frag)
    return href, None


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = _zip_read_text(zf, "META-INF/container.xml")
        root = ET.fromstring(container)
        for rf in root.findall(".//c:rootfile", CONTAINER_NS):
            full = rf.attrib.get("full-path")
            if full:
                return full
    except (KeyError, ET.ParseError):
        pass
    for name in zf.namelist():
        if name.lower().endswith(".opf"):
            return name
    raise UnreadableDocument("OPF package document not found in EPUB")


def _parse_nav_list(list_tag: Tag, base_path: str, opf_dir: str) -> list[NavItem]:
    items: list[NavItem] = []
    for li in list_tag.find_all("li", recursive=False):
        anchor = li.find("a", recursive=False)
        label_tag = anchor if anchor is not None else li.find("span", recursive=False)
        label = label_tag.get_text(" ", strip=True) if label_tag is not None else ""
        href = anchor.get("href") if anchor is not None else None
        nested = li.find(["ol", "ul"], recursive=False)
        children = _parse_nav_list(nested, base_path, opf_dir) if nested is not None else []
        if not href:
            # Heading-only entries still carry their children.
            items.extend(children)
            continue
        items.append(
            NavItem(
                href=_normalize_nav_href(href, base_path, opf_dir),
                label=label,
                children=children,
            )
        )
    return items


def _normalize_nav_href(href: str, base_path: str, opf_dir: str) -> str:
    path, fragment = _split_href_fragment(href)
    if path:
        path = _relative_to_dir(_resolve_relative_path(base_path, unquote(path)), opf_dir)
    else:
        path = _relative_to_dir(base_path, opf_dir)
    return f"{path}#{fragment}" if fragment else path


def _parse_nav_document(html: str, base_path: str, opf_dir: str) -> list[NavItem]:
    soup = BeautifulSoup(html, "html.parser")
    nav_tags = []
    for nav in soup.find_all("nav"):
        nav_type = (nav.get("epub:type") or "").lower()
        role = (nav.get("role") or "").lower()
        if "toc" in nav_type or role == "doc-toc":
            nav_tags.append(nav)
    if not nav_tags:
        nav_tags = soup.find_all("nav")
    for nav in nav_tags:
        top = nav.find(["ol", "ul"])
        if top is None:
            continue
        items = _parse_nav_list(top, base_path, opf_dir)
        if items:
            return items
    return []


def _parse_ncx_document(xml_text: str, base_path: str, opf_dir: str) -> list[NavItem]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return []
    ns = {"ncx": root.tag.split("}")[0].strip("{")} if root.tag.startswith("{") else None
    prefix = "ncx:" if ns else ""

    def _collect_points(elem: ET.Element) -> list[NavItem]:
        items: list[NavItem] = []
        for nav_point in elem.findall(f"{prefix}navPoint", ns):
            label_elem = nav_point.find(f"{prefix}navLabel/{prefix}text", ns)
            content_elem = nav_point.find(f"{prefix}content", ns)
            children = _collect_points(nav_point)
            href = content_elem.attrib.get("src") if content_elem is not None else None
            if not href:
                items.extend(children)
                continue
            label = "".join(label_elem.itertext()).strip() if label_elem is not None else ""
            items.append(
                NavItem(
                    href=_normalize_nav_href(href, base_path, opf_dir),
                    label=label,
                    children=children,
                )
            )
        return items

    nav_map = root.find(f"{prefix}navMap", ns)
    if nav_map is None:
        return []
    return _collect_points(nav_map)


class ContentUnit:
    """One spine item; ``reference`` is its href relative to the package document."""

    def __init__(self, document: "EpubDocument", item: _ManifestItem) -> None:
        self._document = document
        self._item = item
        self.reference = item.href
        self.media_type = item.media_type

    def render(self) -> str:
        media_type = (self.media_type or "").lower()
        is_markup = media_type in HTML_MEDIA_TYPES or (
            not media_type and self._item.path.lower().endswith(HTML_EXTS)
        )
        if not is_markup:
            raise UnitRenderError(f"{self.reference} is not a markup document ({media_type or 'unknown'})")
        try:
            return _zip_read_text(self._document.archive, self._item.path)
        except KeyError as exc:
            raise UnitRenderError(f"{self.reference} is missing from the archive") from exc
        except (zipfile.BadZipFile, OSError, ValueError) as exc:
            raise UnitRenderError(f"{self.reference} could not be read: {exc}") from exc

    def __repr__(self) -> str:
        return f"ContentUnit({self.reference!r})"


class EpubDocument:
    def __init__(self, archive: zipfile.ZipFile) -> None:
        self.archive = archive
        self.opf_path = _find_opf_path(archive)
        try:
            opf_xml = _zip_read_text(archive, self.opf_path)
            self._package = ET.fromstring(opf_xml)
        except (KeyError, ET.ParseError) as exc:
            raise UnreadableDocument(f"Invalid package document: {exc}") from exc
        self.opf_dir = str(PurePosixPath(self.opf_path).parent)
        self._manifest = self._read_manifest()
        self._closed = False

    def __enter__(self) -> "EpubDocument":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read_manifest(self) -> dict[str, _ManifestItem]:
        manifest: dict[str, _ManifestItem] = {}
        for elem in self._package.iter():
            if _strip_tag(elem.tag) != "item":
                continue
            item_id = _get_attr(elem, "id")
            href = _get_attr(elem, "href")
            if not item_id or not href:
                continue
            href = unquote(href)
            manifest[item_id] = _ManifestItem(
                item_id=item_id,
                href=href,
                path=_resolve_relative_path(self.opf_path, href),
                media_type=_get_attr(elem, "media-type"),
                properties=_get_attr(elem, "properties"),
            )
        return manifest

    def _spine_element(self) -> ET.Element | None:
        for elem in self._package.iter():
            if _strip_tag(elem.tag) == "spine":
                return elem
        return None

    def metadata(self) -> BookMetadata:
        title: str | None = None
        for title_el in self._package.iter(f"{{{DC_NS}}}title"):
            text = "".join(title_el.itertext()).strip()
            if text:
                title = text
                break
        authors: list[str] = []
        for creator_el in self._package.iter(f"{{{DC_NS}}}creator"):
            name = "".join(creator_el.itertext()).strip()
            if not name:
                continue
            role = _get_attr(creator_el, "role")
            if role and role.lower() not in {"aut", "author"}:
                continue
            if name not in authors:
                authors.append(name)
        author = ", ".join(authors) if authors else None
        return BookMetadata(title=title, author=author)

    def content_units(self) -> list[ContentUnit]:
        units: list[ContentUnit] = []
        spine = self._spine_element()
        if spine is not None:
            for itemref in spine:
                if _strip_tag(itemref.tag) != "itemref":
                    continue
                item = self._manifest.get(_get_attr(itemref, "idref") or "")
                if item is not None:
                    units.append(ContentUnit(self, item))
        if units:
            return units
        # No usable spine: fall back to every HTML file in archive order.
        for name in self.archive.namelist():
            if not name.lower().endswith(HTML_EXTS):
                continue
            href = _relative_to_dir(name, self.opf_dir)
            item = _ManifestItem(item_id=name, href=href, path=name, media_type=None, properties=None)
            units.append(ContentUnit(self, item))
        return units

    def navigation(self) -> list[NavItem]:
        nav_items = [
            item for item in self._manifest.values() if "nav" in (item.properties or "").lower().split()
        ]
        for item in nav_items:
            try:
                html = _zip_read_text(self.archive, item.path)
            except KeyError:
                continue
            entries = _parse_nav_document(html, item.path, self.opf_dir)
            if entries:
                return entries
        ncx_items: list[_ManifestItem] = []
        spine = self._spine_element()
        toc_id = _get_attr(spine, "toc") if spine is not None else None
        if toc_id and toc_id in self._manifest:
            ncx_items.append(self._manifest[toc_id])
        ncx_items.extend(
            item
            for item in self._manifest.values()
            if (item.media_type or "").lower() == NCX_MEDIA_TYPE and item not in ncx_items
        )
        for item in ncx_items:
            try:
                xml_text = _zip_read_text(self.archive, item.path)
            except KeyError:
                continue
            entries = _parse_ncx_document(xml_text, item.path, self.opf_dir)
            if entries:
                return entries
        return []

    def cover(self) -> CoverImage | None:
        candidates: list[_ManifestItem] = []
        cover_id: str | None = None
        for elem in self._package.iter():
            if _strip_tag(elem.tag) != "meta":
                continue
            name = _get_attr(elem, "name")
            content = _get_attr(elem, "content")
            if name and name.lower() == "cover" and content:
                cover_id = content.strip()
                break
        if cover_id and cover_id in self._manifest:
            candidates.append(self._manifest[cover_id])
        for item in self._manifest.values():
            media_type = (item.media_type or "").lower()
            if not media_type.startswith("image/"):
                continue
            if "cover-image" in (item.properties or "").lower():
                candidates.append(item)
        for item in self._manifest.values():
            media_type = (item.media_type or "").lower()
            if not media_type.startswith("image/"):
                continue
            if "cover" in item.item_id.lower() or "cover" in item.href.lower():
                candidates.append(item)
        seen: set[str] = set()
        for item in candidates:
            if item.path in seen:
                continue
            seen.add(item.path)
            if not (item.media_type or "").lower().startswith("image/"):
                continue
            try:
                data = self.archive.read(item.path)
            except KeyError:
                continue
            except (zipfile.BadZipFile, OSError, ValueError) as exc:
                logger.debug("Skipping unreadable cover %s: %s", item.path, exc)
                continue
            return CoverImage(path=item.path, media_type=item.media_type, data=data)
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.archive.close()


def open_document(data: bytes) -> EpubDocument:
    """Open EPUB bytes, raising UnreadableDocument for anything that is not a valid container."""
    if not data:
        raise UnreadableDocument("Empty file")
    try:
        archive = zipfile.ZipFile(io.BytesIO(data), "r")
    except (zipfile.BadZipFile, ValueError) as exc:
        raise UnreadableDocument(f"Not a ZIP container: {exc}") from exc
    try:
        return EpubDocument(archive)
    except UnreadableDocument:
        archive.close()
        raise
    except (zipfile.BadZipFile, OSError, ValueError) as exc:
        archive.close()
        raise UnreadableDocument(f"Damaged package entry: {exc}") from exc

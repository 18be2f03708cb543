"""Document loading: heterogeneous source bytes to normalized text + anchors."""

from __future__ import annotations

import io
import json
import posixpath
import re
import zipfile
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from html.parser import HTMLParser

import structlog
from docx import Document as DocxDocument
from pypdf import PdfReader

from rag_gateway.errors import PartialExtraction, UnsupportedFormat
from rag_gateway.types import LoadedText, OffsetAnchor

logger = structlog.get_logger(__name__)

ParseFn = Callable[[bytes], LoadedText]

_CODE_EXTENSIONS = ("py", "java", "js", "ts", "go", "rs", "c", "cpp", "h", "kt", "scala")

_EXTENSION_FORMATS: dict[str, str] = {
    "txt": "text",
    "log": "text",
    **{ext: "text" for ext in _CODE_EXTENSIONS},
    "md": "markdown",
    "markdown": "markdown",
    "json": "json",
    "html": "html",
    "htm": "html",
    "pdf": "pdf",
    "epub": "epub",
    "docx": "docx",
    "fb2": "fb2",
}

_MIME_FORMATS: dict[str, str] = {
    "text/plain": "text",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "application/json": "json",
    "text/html": "html",
    "application/xhtml+xml": "html",
    "application/pdf": "pdf",
    "application/epub+zip": "epub",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/x-fictionbook+xml": "fb2",
}

_GENERIC_MIME_TYPES = {"application/octet-stream", "binary/octet-stream"}

_MARKDOWN_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t]*#*[ \t]*$", flags=re.MULTILINE)


@dataclass(slots=True)
class _Block:
    text: str
    page: int | None = None
    section: str | None = None


class DocumentLoader:
    """Maps a source format to the function that parses it.

    Formats are resolved from a declared MIME type, extension or file name;
    when nothing usable is declared the payload is sniffed.
    """

    def __init__(self, parsers: dict[str, ParseFn] | None = None) -> None:
        self._parsers: dict[str, ParseFn] = {}
        for source_format, parser in (parsers or _DEFAULT_PARSERS).items():
            self.register(source_format, parser)

    def register(self, source_format: str, parser: ParseFn) -> None:
        self._parsers[source_format.lower()] = parser

    def supported_formats(self) -> list[str]:
        return sorted(self._parsers)

    def resolve_format(self, data: bytes, declared_format: str | None = None) -> str:
        source_format = _declared_to_format(declared_format) if declared_format else None
        if source_format is None:
            source_format = sniff_format(data)
        if source_format is None or source_format not in self._parsers:
            raise UnsupportedFormat(
                f"Unsupported document format: {declared_format or 'unrecognized content'}"
            )
        return source_format

    def load(self, data: bytes, *, declared_format: str | None = None) -> LoadedText:
        """Parse raw bytes into a normalized `LoadedText`.

        Raises:
            UnsupportedFormat: no parser matches the declared or sniffed format.
            PartialExtraction: some content could not be parsed; the recovered
                text is attached to the exception.
        """

        source_format = self.resolve_format(data, declared_format)
        try:
            loaded = self._parsers[source_format](data)
        except PartialExtraction as exc:
            logger.warning(
                "document_partially_extracted",
                source_format=source_format,
                recovered_chars=len(exc.partial.text),
                reason=str(exc),
            )
            raise
        logger.info(
            "document_loaded",
            source_format=source_format,
            chars=len(loaded.text),
            anchors=len(loaded.anchors),
            warnings=len(loaded.warnings),
        )
        return loaded


def sniff_format(data: bytes) -> str | None:
    """Guess a format from content alone; `None` if nothing matches."""

    head = data[:1024].lstrip()
    if head.startswith(b"%PDF-"):
        return "pdf"
    if data.startswith(b"PK\x03\x04"):
        return _sniff_zip(data)

    lowered = head.removeprefix(b"\xef\xbb\xbf").lower()
    if b"<fictionbook" in lowered:
        return "fb2"
    if lowered.startswith(b"<!doctype html") or b"<html" in lowered:
        return "html"
    if lowered[:1] in (b"{", b"["):
        try:
            json.loads(data.decode("utf-8-sig"))
            return "json"
        except ValueError:
            pass
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return "text"


def _sniff_zip(data: bytes) -> str | None:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = set(archive.namelist())
            if "mimetype" in names and archive.read("mimetype").strip() == b"application/epub+zip":
                return "epub"
            if "word/document.xml" in names:
                return "docx"
    except zipfile.BadZipFile:
        return None
    return None


def _declared_to_format(declared: str) -> str | None:
    normalized = declared.strip().lower()
    mime = normalized.split(";", 1)[0].strip()
    if mime in _MIME_FORMATS:
        return _MIME_FORMATS[mime]
    if mime in _GENERIC_MIME_TYPES or not mime:
        return None
    if mime in _EXTENSION_FORMATS.values():
        return mime
    basename = mime.rsplit("/", 1)[-1]
    if "." in basename and basename.rsplit(".", 1)[-1] in _EXTENSION_FORMATS:
        return _EXTENSION_FORMATS[basename.rsplit(".", 1)[-1]]
    if "/" in mime and "." not in basename:
        raise UnsupportedFormat(f"Unsupported document format: {declared}")
    if basename in _EXTENSION_FORMATS:
        return _EXTENSION_FORMATS[basename]
    # Unknown extensions fall back to sniffing the content.
    return None


# -- text-like formats -------------------------------------------------------


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _decode(data: bytes, source_format: str) -> LoadedText:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        recovered = LoadedText(
            text=_normalize_newlines(data.decode("utf-8", errors="replace")),
            source_format=source_format,
        )
        message = f"Invalid UTF-8 at byte {exc.start}; undecodable bytes were replaced"
        recovered.warnings.append(message)
        raise PartialExtraction(message, recovered) from exc
    return LoadedText(text=_normalize_newlines(text), source_format=source_format)


def parse_text(data: bytes) -> LoadedText:
    return _decode(data, "text")


def parse_markdown(data: bytes) -> LoadedText:
    loaded = _decode(data, "markdown")
    loaded.anchors = [
        OffsetAnchor(offset=match.start(), section=match.group(2).strip())
        for match in _MARKDOWN_HEADING.finditer(loaded.text)
    ]
    return loaded


def parse_json(data: bytes) -> LoadedText:
    raw = _decode(data, "json")
    try:
        payload = json.loads(raw.text)
    except ValueError as exc:
        raw.warnings.append(f"Invalid JSON: {exc}; kept raw text")
        raise PartialExtraction("Invalid JSON document", raw) from exc
    if isinstance(payload, dict):
        text = json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2)
    elif isinstance(payload, list):
        text = json.dumps(payload, ensure_ascii=False, indent=2)
    else:
        text = str(payload)
    return LoadedText(text=text, source_format="json")


# -- markup formats ----------------------------------------------------------


class _HtmlTextExtractor(HTMLParser):
    """Collects visible text as blocks; headings become section blocks."""

    _SKIP_TAGS = {"script", "style", "head", "noscript", "template"}
    _HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
    _BLOCK_TAGS = {
        "p", "div", "br", "li", "tr", "td", "th", "section", "article",
        "blockquote", "pre", "table", "ul", "ol", "dd", "dt", "hr",
    } | _HEADING_TAGS

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.blocks: list[_Block] = []
        self._buffer: list[str] = []
        self._skip_depth = 0
        self._in_heading = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self._BLOCK_TAGS:
            self._flush()
            if tag in self._HEADING_TAGS:
                self._in_heading = True

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in self._BLOCK_TAGS:
            self._flush()
            if tag in self._HEADING_TAGS:
                self._in_heading = False

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._buffer.append(data)

    def close(self) -> None:
        super().close()
        self._flush()

    def _flush(self) -> None:
        text = " ".join("".join(self._buffer).split())
        self._buffer.clear()
        if text:
            self.blocks.append(_Block(text=text, section=text if self._in_heading else None))


def _html_blocks(markup: str) -> list[_Block]:
    extractor = _HtmlTextExtractor()
    extractor.feed(markup)
    extractor.close()
    return extractor.blocks


def _assemble(blocks: list[_Block], source_format: str) -> LoadedText:
    """Join blocks with blank lines, anchoring every block that opens a page or section."""

    parts: list[str] = []
    anchors: list[OffsetAnchor] = []
    offset = 0
    for block in blocks:
        if parts:
            offset += 2
        if block.page is not None or block.section is not None:
            anchors.append(OffsetAnchor(offset=offset, page=block.page, section=block.section))
        parts.append(block.text)
        offset += len(block.text)
    return LoadedText(text="\n\n".join(parts), source_format=source_format, anchors=anchors)


def parse_html(data: bytes) -> LoadedText:
    decoded = _decode(data, "html")
    return _assemble(_html_blocks(decoded.text), "html")


def _reject_entities(data: bytes, source_format: str) -> None:
    if b"<!ENTITY" in data:
        partial = LoadedText(text="", source_format=source_format)
        raise PartialExtraction("XML entity declarations are not allowed", partial)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


_FB2_TEXT_TAGS = {"p", "v", "subtitle", "text-author", "td", "th"}
_FB2_IGNORED_TAGS = {"description", "binary", "stylesheet", "image", "empty-line"}


def _walk_fb2(element: ET.Element, blocks: list[_Block]) -> None:
    for child in element:
        tag = _local_name(child.tag)
        if tag in _FB2_IGNORED_TAGS:
            continue
        if tag == "title":
            title = " ".join("".join(child.itertext()).split())
            if title:
                blocks.append(_Block(text=title, section=title))
        elif tag in _FB2_TEXT_TAGS:
            text = " ".join("".join(child.itertext()).split())
            if text:
                blocks.append(_Block(text=text))
        else:
            _walk_fb2(child, blocks)


def parse_fb2(data: bytes) -> LoadedText:
    _reject_entities(data, "fb2")
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        partial = LoadedText(text="", source_format="fb2")
        raise PartialExtraction(f"Malformed FB2 document: {exc}", partial) from exc

    blocks: list[_Block] = []
    for body in root.findall("{*}body"):
        _walk_fb2(body, blocks)
    return _assemble(blocks, "fb2")


# -- binary container formats ------------------------------------------------


def parse_pdf(data: bytes) -> LoadedText:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = list(reader.pages)
    except Exception as exc:
        partial = LoadedText(text="", source_format="pdf")
        raise PartialExtraction(f"Unreadable PDF: {exc}", partial) from exc

    blocks: list[_Block] = []
    warnings: list[str] = []
    failed_pages: list[int] = []
    for number, page in enumerate(pages, start=1):
        try:
            page_text = page.extract_text() or ""
        except Exception as exc:
            failed_pages.append(number)
            warnings.append(f"Page {number} could not be extracted: {exc}")
            continue
        page_text = _normalize_newlines(page_text).strip()
        if not page_text:
            warnings.append(f"Page {number} has no extractable text")
            continue
        blocks.append(_Block(text=page_text, page=number))

    loaded = _assemble(blocks, "pdf")
    loaded.warnings = warnings
    if failed_pages:
        raise PartialExtraction(f"Failed to extract PDF pages {failed_pages}", loaded)
    if not loaded.text:
        raise PartialExtraction("PDF has no extractable text layer", loaded)
    return loaded


def parse_docx(data: bytes) -> LoadedText:
    try:
        document = DocxDocument(io.BytesIO(data))
    except Exception as exc:
        partial = LoadedText(text="", source_format="docx")
        raise PartialExtraction(f"Unreadable DOCX: {exc}", partial) from exc

    blocks: list[_Block] = []
    for paragraph in document.paragraphs:
        text = paragraph.text.strip()
        if not text:
            continue
        style_name = paragraph.style.name if paragraph.style is not None else ""
        is_heading = style_name.startswith("Heading") or style_name == "Title"
        blocks.append(_Block(text=text, section=text if is_heading else None))
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                blocks.append(_Block(text=" | ".join(cells)))
    return _assemble(blocks, "docx")


def _epub_spine(archive: zipfile.ZipFile) -> list[str]:
    container = ET.fromstring(archive.read("META-INF/container.xml"))
    rootfile = container.find(".//{*}rootfile")
    if rootfile is None or not rootfile.get("full-path"):
        raise KeyError("container.xml has no rootfile")
    opf_path = rootfile.get("full-path", "")
    opf_dir = posixpath.dirname(opf_path)
    package = ET.fromstring(archive.read(opf_path))

    manifest = {
        item.get("id"): item.get("href", "")
        for item in package.findall(".//{*}manifest/{*}item")
    }
    spine: list[str] = []
    for itemref in package.findall(".//{*}spine/{*}itemref"):
        href = manifest.get(itemref.get("idref"))
        if href:
            spine.append(posixpath.normpath(posixpath.join(opf_dir, href)))
    return spine


def parse_epub(data: bytes) -> LoadedText:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        partial = LoadedText(text="", source_format="epub")
        raise PartialExtraction(f"Unreadable EPUB: {exc}", partial) from exc

    with archive:
        try:
            spine = _epub_spine(archive)
        except (KeyError, ET.ParseError) as exc:
            partial = LoadedText(text="", source_format="epub")
            raise PartialExtraction(f"Invalid EPUB package: {exc}", partial) from exc

        blocks: list[_Block] = []
        warnings: list[str] = []
        for href in spine:
            try:
                markup = archive.read(href).decode("utf-8", errors="replace")
            except KeyError:
                warnings.append(f"Missing spine item: {href}")
                continue
            item_blocks = _html_blocks(markup)
            if not item_blocks:
                continue
            if item_blocks[0].section is None:
                item_blocks[0].section = posixpath.basename(href)
            blocks.extend(item_blocks)

    loaded = _assemble(blocks, "epub")
    loaded.warnings = warnings
    if warnings:
        raise PartialExtraction("; ".join(warnings), loaded)
    return loaded


_DEFAULT_PARSERS: dict[str, ParseFn] = {
    "text": parse_text,
    "markdown": parse_markdown,
    "json": parse_json,
    "html": parse_html,
    "pdf": parse_pdf,
    "epub": parse_epub,
    "docx": parse_docx,
    "fb2": parse_fb2,
}

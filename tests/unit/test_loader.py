import io
import json
import zipfile

import pytest
from docx import Document as DocxDocument
from pypdf import PdfWriter

from rag_gateway.errors import PartialExtraction, UnsupportedFormat
from rag_gateway.ingest.loader import DocumentLoader, sniff_format


def _epub_bytes() -> bytes:
    container = """<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>"""
    opf = """<?xml version="1.0"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0">
  <manifest>
    <item id="ch2" href="text/chapter2.xhtml" media-type="application/xhtml+xml"/>
    <item id="ch1" href="text/chapter1.xhtml" media-type="application/xhtml+xml"/>
  </manifest>
  <spine>
    <itemref idref="ch1"/>
    <itemref idref="ch2"/>
  </spine>
</package>"""
    chapter1 = "<html><body><h1>Arrival</h1><p>The ship docked at dawn.</p></body></html>"
    chapter2 = "<html><body><p>Nobody came to meet it.</p></body></html>"

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("mimetype", "application/epub+zip")
        archive.writestr("META-INF/container.xml", container)
        archive.writestr("OEBPS/content.opf", opf)
        archive.writestr("OEBPS/text/chapter1.xhtml", chapter1)
        archive.writestr("OEBPS/text/chapter2.xhtml", chapter2)
    return buffer.getvalue()


def _docx_bytes() -> bytes:
    document = DocxDocument()
    document.add_heading("Refunds", level=1)
    document.add_paragraph("Refunds are issued within 30 days.")
    document.add_heading("Shipping", level=1)
    document.add_paragraph("Orders ship in two business days.")
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def _blank_pdf_bytes() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


_FB2 = """<?xml version="1.0" encoding="utf-8"?>
<FictionBook xmlns="http://www.gribuser.ru/xml/fictionbook/2.0">
  <description><title-info><book-title>Ignored Title</book-title></title-info></description>
  <body>
    <section>
      <title><p>Chapter One</p></title>
      <p>It was a bright cold day.</p>
      <p>The clocks were striking.</p>
    </section>
  </body>
  <binary id="cover" content-type="image/png">AAAA</binary>
</FictionBook>"""


def test_plain_text_normalizes_newlines() -> None:
    loaded = DocumentLoader().load(b"line one\r\nline two\r", declared_format="notes.txt")

    assert loaded.text == "line one\nline two\n"
    assert loaded.source_format == "text"


def test_invalid_utf8_surfaces_partial_extraction() -> None:
    with pytest.raises(PartialExtraction) as excinfo:
        DocumentLoader().load(b"caf\xe9 menu", declared_format="text/plain")

    assert "�" in excinfo.value.partial.text
    assert excinfo.value.partial.text.endswith("menu")
    assert excinfo.value.partial.warnings


def test_markdown_headings_become_section_anchors() -> None:
    text = "# Intro\nhello\n\n## Details\nmore text\n"

    loaded = DocumentLoader().load(text.encode(), declared_format="README.md")

    assert [anchor.section for anchor in loaded.anchors] == ["Intro", "Details"]
    assert loaded.anchors[1].offset == text.index("## Details")


def test_json_is_pretty_printed_with_sorted_keys() -> None:
    loaded = DocumentLoader().load(b'{"b": 1, "a": {"z": true}}', declared_format="application/json")

    assert loaded.text == json.dumps({"a": {"z": True}, "b": 1}, indent=2, sort_keys=True)


def test_html_skips_scripts_and_anchors_headings() -> None:
    markup = (
        b"<html><head><title>t</title><style>p{}</style></head><body>"
        b"<h2>Policy</h2><script>alert(1)</script><p>Refunds &amp; returns.</p></body></html>"
    )

    loaded = DocumentLoader().load(markup)

    assert loaded.source_format == "html"
    assert loaded.text == "Policy\n\nRefunds & returns."
    assert loaded.anchors[0].section == "Policy"
    assert "alert" not in loaded.text


def test_epub_follows_spine_order_with_section_anchors() -> None:
    loaded = DocumentLoader().load(_epub_bytes())

    assert loaded.source_format == "epub"
    assert loaded.text.index("docked") < loaded.text.index("Nobody")
    assert [anchor.section for anchor in loaded.anchors] == ["Arrival", "chapter2.xhtml"]


def test_docx_heading_styles_become_sections() -> None:
    loaded = DocumentLoader().load(_docx_bytes(), declared_format="policy.docx")

    assert "Refunds are issued within 30 days." in loaded.text
    assert [anchor.section for anchor in loaded.anchors] == ["Refunds", "Shipping"]


def test_fb2_reads_body_and_ignores_description() -> None:
    loaded = DocumentLoader().load(_FB2.encode("utf-8"))

    assert loaded.source_format == "fb2"
    assert "Ignored Title" not in loaded.text
    assert "AAAA" not in loaded.text
    assert loaded.text.startswith("Chapter One")
    assert loaded.anchors[0].section == "Chapter One"


def test_fb2_with_entity_declarations_is_refused() -> None:
    payload = b'<?xml version="1.0"?><!DOCTYPE x [<!ENTITY a "aaaa">]><FictionBook>&a;</FictionBook>'

    with pytest.raises(PartialExtraction):
        DocumentLoader().load(payload, declared_format="book.fb2")


def test_pdf_without_text_layer_is_partial() -> None:
    with pytest.raises(PartialExtraction) as excinfo:
        DocumentLoader().load(_blank_pdf_bytes())

    assert excinfo.value.partial.text == ""
    assert "Page 1 has no extractable text" in excinfo.value.partial.warnings


def test_unreadable_pdf_is_partial_with_empty_text() -> None:
    with pytest.raises(PartialExtraction) as excinfo:
        DocumentLoader().load(b"%PDF-1.7\nthis is not really a pdf", declared_format="pdf")

    assert excinfo.value.partial.text == ""


def test_unsupported_formats_are_rejected() -> None:
    loader = DocumentLoader()

    with pytest.raises(UnsupportedFormat):
        loader.load(b"\x89PNG\r\n", declared_format="image/png")
    with pytest.raises(UnsupportedFormat):
        loader.load(b"\xff\xfe\x00\x81\x00")


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (b"%PDF-1.4 ...", "pdf"),
        (b"<!DOCTYPE html><html></html>", "html"),
        (b'[{"a": 1}]', "json"),
        (b"[not json", "text"),
        (b"plain words", "text"),
        (b"\xff\xfe\x00\x81", None),
    ],
)
def test_sniff_format(payload: bytes, expected: str | None) -> None:
    assert sniff_format(payload) == expected


def test_sniff_format_detects_zip_containers() -> None:
    assert sniff_format(_epub_bytes()) == "epub"
    assert sniff_format(_docx_bytes()) == "docx"

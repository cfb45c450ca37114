"""
Book export formats.

Each exporter renders a title, author and generated chapters into the bytes of
one file format: PDF (reportlab), DOCX (python-docx) or EPUB 3 (zip container).
"""

import io
import logging
import os
import re
import zipfile
from html import escape
from typing import Callable, Dict, List
from uuid import uuid4

from aaronos.jobs.job_types import GeneratedChapter
from aaronos.jobs.utils import utcnow

logger = logging.getLogger(__name__)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


def _paragraphs(content: str) -> List[str]:
    """Split chapter text on blank lines; single newlines become spaces."""
    return [" ".join(p.split()) for p in _PARAGRAPH_SPLIT.split(content or "") if p.strip()]


def _chapter_heading(chapter: GeneratedChapter) -> str:
    return f"Chapter {chapter.number}: {chapter.title}"


# ============================================================================
# PDF
# ============================================================================

def export_pdf(title: str, author: str, chapters: List[GeneratedChapter]) -> bytes:
    """Title page followed by one section per chapter, each starting on a new page."""
    from reportlab.lib.pagesizes import letter
    from reportlab.lib.units import inch
    from reportlab.lib.styles import getSampleStyleSheet
    from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=title,
        author=author,
    )
    styles = getSampleStyleSheet()
    story: List = []

    story.append(Spacer(1, 2 * inch))
    story.append(Paragraph(escape(title), styles["Title"]))
    story.append(Paragraph(f"by {escape(author)}", styles["Heading3"]))

    for chapter in chapters:
        story.append(PageBreak())
        story.append(Paragraph(escape(_chapter_heading(chapter)), styles["Heading1"]))
        story.append(Spacer(1, 0.2 * inch))
        for paragraph in _paragraphs(chapter.content):
            story.append(Paragraph(escape(paragraph), styles["BodyText"]))
            story.append(Spacer(1, 0.1 * inch))

    doc.build(story)
    buf.seek(0)
    return buf.getvalue()


# ============================================================================
# DOCX
# ============================================================================

def export_docx(title: str, author: str, chapters: List[GeneratedChapter]) -> bytes:
    from docx import Document
    from docx.enum.text import WD_ALIGN_PARAGRAPH
    from docx.shared import Pt

    doc = Document()
    doc.core_properties.title = title
    doc.core_properties.author = author

    heading = doc.add_paragraph(title)
    heading.runs[0].font.size = Pt(24)
    heading.runs[0].bold = True
    heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
    doc.add_paragraph(f"by {author}").alignment = WD_ALIGN_PARAGRAPH.CENTER

    for chapter in chapters:
        doc.add_page_break()
        doc.add_heading(_chapter_heading(chapter), level=1)
        for paragraph in _paragraphs(chapter.content):
            doc.add_paragraph(paragraph)

    b = io.BytesIO()
    doc.save(b)
    return b.getvalue()


# ============================================================================
# EPUB 3
# ============================================================================

_CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

_STYLESHEET = """body { font-family: Georgia, serif; line-height: 1.6; margin: 0 5%; }
h1 { color: #333; }
h2 { color: #666; margin-top: 2em; }
"""


def _xhtml_page(title: str, body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE html>\n"
        '<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" lang="en" xml:lang="en">\n'
        f"<head><meta charset=\"UTF-8\"/><title>{escape(title)}</title>"
        '<link rel="stylesheet" type="text/css" href="style.css"/></head>\n'
        f"<body>\n{body}\n</body>\n</html>\n"
    )


def export_epub(title: str, author: str, chapters: List[GeneratedChapter]) -> bytes:
    """Minimal valid EPUB 3: mimetype, container, package document, nav and one XHTML file per chapter."""
    book_id = f"urn:uuid:{uuid4()}"
    modified = utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")

    chapter_files = [(f"chapter_{i + 1}.xhtml", chapter) for i, chapter in enumerate(chapters)]

    title_page = _xhtml_page(
        title,
        f"<h1>{escape(title)}</h1>\n<p><em>by {escape(author)}</em></p>",
    )

    nav_items = "\n".join(
        f'      <li><a href="{name}">{escape(_chapter_heading(chapter))}</a></li>'
        for name, chapter in chapter_files
    )
    nav_page = _xhtml_page(
        "Contents",
        '<nav epub:type="toc" id="toc">\n  <h1>Contents</h1>\n  <ol>\n'
        '      <li><a href="title.xhtml">Title Page</a></li>\n'
        f"{nav_items}\n  </ol>\n</nav>",
    )

    manifest_items = [
        '    <item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>',
        '    <item id="css" href="style.css" media-type="text/css"/>',
        '    <item id="title" href="title.xhtml" media-type="application/xhtml+xml"/>',
    ]
    spine_items = ['    <itemref idref="title"/>']
    for i, (name, _) in enumerate(chapter_files):
        manifest_items.append(f'    <item id="ch{i + 1}" href="{name}" media-type="application/xhtml+xml"/>')
        spine_items.append(f'    <itemref idref="ch{i + 1}"/>')

    content_opf = f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="book-id">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="book-id">{book_id}</dc:identifier>
    <dc:title>{escape(title)}</dc:title>
    <dc:creator>{escape(author)}</dc:creator>
    <dc:language>en</dc:language>
    <meta property="dcterms:modified">{modified}</meta>
  </metadata>
  <manifest>
{chr(10).join(manifest_items)}
  </manifest>
  <spine>
{chr(10).join(spine_items)}
  </spine>
</package>
"""

    zip_buf = io.BytesIO()
    with zipfile.ZipFile(zip_buf, "w", zipfile.ZIP_DEFLATED) as zf:
        # mimetype must be the first entry and stored uncompressed
        zf.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", _CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", content_opf)
        zf.writestr("OEBPS/nav.xhtml", nav_page)
        zf.writestr("OEBPS/style.css", _STYLESHEET)
        zf.writestr("OEBPS/title.xhtml", title_page)
        for name, chapter in chapter_files:
            body = f"<h2>{escape(_chapter_heading(chapter))}</h2>\n" + "\n".join(
                f"<p>{escape(p)}</p>" for p in _paragraphs(chapter.content)
            )
            zf.writestr(f"OEBPS/{name}", _xhtml_page(_chapter_heading(chapter), body))

    zip_buf.seek(0)
    return zip_buf.getvalue()


EXPORTERS: Dict[str, Callable[[str, str, List[GeneratedChapter]], bytes]] = {
    "pdf": export_pdf,
    "docx": export_docx,
    "epub": export_epub,
}


def write_book(
    output_dir: str,
    work_id: str,
    fmt: str,
    title: str,
    author: str,
    chapters: List[GeneratedChapter],
) -> str:
    """Render the book and write it to <output_dir>/<work_id>.<fmt>. Returns the path."""
    exporter = EXPORTERS.get(fmt)
    if exporter is None:
        raise ValueError(f"Unsupported export format: {fmt}")

    data = exporter(title, author, chapters)

    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"{work_id}.{fmt}")
    with open(path, "wb") as f:
        f.write(data)

    logger.info(f"Exported {fmt.upper()} ({len(data)} bytes) to {path}")
    return path

"""
EPUB container reading and plain-text sources.

The spine is walked in reading order; each XHTML document becomes one
chapter candidate. Titles come from the first heading-like element,
bodies from the visible text with navigation chrome removed.
"""
import re, logging, pathlib, zipfile
from dataclasses import dataclass
from typing import List, Dict

from ebooklib import epub
from bs4 import BeautifulSoup

from .errors import ValidationError, ConversionError
from .models import SourceDocument

logger = logging.getLogger(__name__)

MAX_SOURCE_BYTES = 50 * 1024 * 1024
MIN_LINE_CHARS = 3            # lines this short or shorter are page furniture
MIN_RAW_CHAPTER_CHARS = 50
MIN_PARAGRAPH_CHARS = 10
MIN_CHAPTER_CHARS = 100
EPUB_MIMETYPE = "application/epub+zip"

TITLE_SELECTORS = ["h1", "h2", "h3", "title", ".chapter-title", ".title"]
UNWANTED_TAGS = ["script", "style", "nav", "header", "footer", "aside"]
METADATA_FIELDS = {
    "title": "title",
    "creator": "author",
    "publisher": "publisher",
    "language": "language",
    "date": "date",
    "description": "description",
}


@dataclass
class EpubChapter:
    index: int          # 1-based position among kept chapters
    title: str
    content: str
    source_path: str


@dataclass
class ConversionResult:
    content: str
    file_name: str
    chapter_count: int
    char_count: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "content": self.content,
            "file_name": self.file_name,
            "chapter_count": self.chapter_count,
            "char_count": self.char_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ConversionResult":
        return cls(
            content=str(data.get("content", "")),
            file_name=str(data.get("file_name", "")),
            chapter_count=int(data.get("chapter_count", 0)),
            char_count=int(data.get("char_count", 0)),
        )


# ---------------- Input checks ----------------
def _check_source(path: pathlib.Path, suffixes, kind: str) -> None:
    if path.suffix.lower() not in suffixes:
        raise ValidationError(f"{path.name} is not a {kind} file")
    if not path.exists():
        raise ValidationError(f"{path} does not exist")
    if path.stat().st_size > MAX_SOURCE_BYTES:
        raise ValidationError(f"{path.name} is larger than 50MB")


def _warn_on_mimetype(path: pathlib.Path) -> None:
    try:
        with zipfile.ZipFile(path) as zf:
            if "mimetype" in zf.namelist():
                declared = zf.read("mimetype").decode("ascii", errors="ignore").strip()
                if declared != EPUB_MIMETYPE:
                    logger.warning("%s declares mimetype %r; it may not be a standard EPUB", path.name, declared)
    except zipfile.BadZipFile as e:
        raise ConversionError(f"{path.name} is not a valid EPUB container: {e}") from e


def read_text_source(path: str) -> SourceDocument:
    p = pathlib.Path(path)
    _check_source(p, {".txt", ".text", ".md"}, "text")
    st = p.stat()
    return SourceDocument(
        name=p.name,
        raw_content=p.read_text(encoding="utf-8", errors="replace"),
        size_bytes=st.st_size,
        modified=st.st_mtime,
    )


# ---------------- HTML -> text ----------------
def extract_text_from_html(html) -> str:
    """Visible text of an XHTML document, one non-trivial line per paragraph."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(UNWANTED_TAGS):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")

    lines = []
    for line in soup.get_text("\n").split("\n"):
        clean = re.sub(r"\s+", " ", line).strip()
        if len(clean) > MIN_LINE_CHARS:
            lines.append(clean)
    return "\n\n".join(lines)


def _chapter_title(soup: BeautifulSoup, index: int) -> str:
    for selector in TITLE_SELECTORS:
        el = soup.select_one(selector)
        if el is not None and el.get_text(strip=True):
            return re.sub(r"\s+", " ", el.get_text(" ", strip=True))
    return f"第{index + 1}章"


# ---------------- EPUB ----------------
def epub_load(path: str):
    return epub.read_epub(path)


def parse_epub_chapters(path: str) -> List[EpubChapter]:
    p = pathlib.Path(path)
    _check_source(p, {".epub"}, "EPUB")
    _warn_on_mimetype(p)
    try:
        book = epub_load(str(p))
    except Exception as e:
        # ebooklib raises plain exceptions and KeyErrors for broken containers
        raise ConversionError(f"could not read {p.name}: {e}") from e

    spine_ids = [item_id for (item_id, _) in book.spine]
    logger.info("%s: %d spine entries", p.name, len(spine_ids))

    raw = []
    for i, item_id in enumerate(spine_ids):
        item = book.get_item_with_id(item_id)
        if item is None or not getattr(item, "media_type", "").startswith("application/xhtml"):
            continue
        html = item.get_content()
        title = _chapter_title(BeautifulSoup(html, "lxml"), i)
        content = extract_text_from_html(html)
        if len(content) < MIN_RAW_CHAPTER_CHARS:
            logger.debug("Skipping short spine item %s (%d chars)", item.get_name(), len(content))
            continue
        raw.append((title, content, item.get_name()))

    chapters: List[EpubChapter] = []
    for title, content, name in raw:
        paragraphs = [para for para in content.split("\n\n") if len(para.strip()) > MIN_PARAGRAPH_CHARS]
        cleaned = "\n\n".join(paragraphs)
        if len(cleaned) > MIN_CHAPTER_CHARS:
            chapters.append(EpubChapter(index=len(chapters) + 1, title=title, content=cleaned, source_path=name))

    if not chapters:
        raise ConversionError(f"no usable chapters found in {p.name}")
    logger.info("%s: extracted %d chapters", p.name, len(chapters))
    return chapters


def convert_epub_to_text(path: str) -> ConversionResult:
    chapters = parse_epub_chapters(path)
    content = "\n\n".join(f"{ch.title}\n\n{ch.content}" for ch in chapters)
    file_name = re.sub(r"\.epub$", ".txt", pathlib.Path(path).name, flags=re.IGNORECASE)
    return ConversionResult(content=content, file_name=file_name,
                            chapter_count=len(chapters), char_count=len(content))


def epub_metadata(path: str) -> Dict[str, str]:
    try:
        book = epub_load(path)
    except Exception as e:
        logger.warning("Could not read metadata from %s: %s", path, e)
        return {}
    meta: Dict[str, str] = {}
    for dc_name, key in METADATA_FIELDS.items():
        values = book.get_metadata("DC", dc_name)
        if values and values[0][0]:
            meta[key] = str(values[0][0]).strip()
    return meta


def source_from_conversion(result: ConversionResult, origin: pathlib.Path) -> SourceDocument:
    return SourceDocument(
        name=result.file_name,
        raw_content=result.content,
        size_bytes=len(result.content.encode("utf-8")),
        modified=origin.stat().st_mtime if origin.exists() else None,
    )

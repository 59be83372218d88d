"""
Chapter-boundary detection and grouping.

Headings are only recognised at the start of a line. When no heading is
found the text falls back to blank-line paragraphs, grouped by the same
``group_size``: in that mode the unit is paragraphs, not chapters.
"""
import re, logging, pathlib, zipfile, datetime
from typing import List, Tuple

from .errors import InvalidParameter
from .models import ChapterGroup

logger = logging.getLogger(__name__)

MIN_CHAPTER_BODY_CHARS = 50   # shorter bodies are ads or orphan headings

HEADING_RE = re.compile(
    r"(^\s*(?:"
    r"第\s*[0-9一二三四五六七八九十百千零]+\s*[章回节卷篇]"
    r"|(?:Chapter|CHAPTER)\s*\d+"
    r"|序章|楔子|尾声|后记|番外"
    r"|(?:Prologue|PROLOGUE|Epilogue|EPILOGUE|Interlude|INTERLUDE)\b"
    r")[^\n]*\n)",
    re.MULTILINE,
)
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


def _check_group_size(group_size) -> None:
    if isinstance(group_size, bool) or not isinstance(group_size, int) or group_size < 1:
        raise InvalidParameter(f"group_size must be a positive integer, got {group_size!r}")


def detect_chapters(text: str) -> List[Tuple[str, str]]:
    """Return (title, body) pairs in reading order; text before the first heading is ignored."""
    parts = HEADING_RE.split(text)
    chapters = []
    # parts = [preamble, heading1, body1, heading2, body2, ...]
    for i in range(1, len(parts), 2):
        title = parts[i].replace("\n", "").strip()
        body = parts[i + 1].strip() if i + 1 < len(parts) else ""
        if len(body) > MIN_CHAPTER_BODY_CHARS:
            chapters.append((title, body))
        else:
            logger.debug("Dropping heading %r: body too short (%d chars)", title, len(body))
    return chapters


def split_paragraphs(text: str) -> List[str]:
    return [p for p in PARAGRAPH_SPLIT_RE.split(text) if p.strip()]


def segment_text(text: str, group_size: int = 50) -> List[ChapterGroup]:
    _check_group_size(group_size)
    if not text or not text.strip():
        return []

    chapters = detect_chapters(text)
    groups: List[ChapterGroup] = []

    if not chapters:
        paragraphs = split_paragraphs(text)
        logger.info("No chapter headings found; grouping %d paragraphs by %d", len(paragraphs), group_size)
        for start in range(0, len(paragraphs), group_size):
            chunk = paragraphs[start:start + group_size]
            end = start + len(chunk)
            groups.append(ChapterGroup(name=f"Paragraphs {start + 1}-{end}",
                                       content="\n\n".join(chunk).strip()))
        return groups

    logger.info("Detected %d chapters; grouping by %d", len(chapters), group_size)
    for start in range(0, len(chapters), group_size):
        chunk = chapters[start:start + group_size]
        end = start + len(chunk)
        content = "\n\n".join(f"{title}\n\n{body}" for title, body in chunk)
        groups.append(ChapterGroup(name=f"Chapters {start + 1}-{end}", content=content.strip()))
    return groups


def safe_file_name(name: str, fallback: str) -> str:
    return re.sub(r"[^-\w]+", "_", name).strip("_") or fallback


def write_groups(groups: List[ChapterGroup], out_dir: str, as_zip: bool = False) -> List[pathlib.Path]:
    """Write each group to ``NN_<name>.txt`` or bundle them into one zip archive."""
    target = pathlib.Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    names = [f"{i:02d}_{safe_file_name(g.name, f'group_{i}')}.txt" for i, g in enumerate(groups, start=1)]

    if as_zip:
        stamp = datetime.datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        archive = target / f"chapter_groups_{stamp}.zip"
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, g in zip(names, groups):
                zf.writestr(name, g.content)
        return [archive]

    written = []
    for name, g in zip(names, groups):
        path = target / name
        path.write_text(g.content, encoding="utf-8")
        written.append(path)
    return written

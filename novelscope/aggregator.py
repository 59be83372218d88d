"""
Merging per-group markdown tables into one table.

Model output is not contract-bound, so parsing here is deliberately
permissive: a result without a usable table contributes no rows, and
array-shaped cells fall back to a comma split when they are not valid JSON.
"""
import re, json, logging, pathlib, datetime
from typing import Dict, List, Mapping, Union

from .errors import ParseError, ValidationError
from .models import AggregatedTable, AnalysisResult

logger = logging.getLogger(__name__)

RANGE_RE = re.compile(r"(\d+)\s*-?\s*(\d+)?")


def _cells(line: str) -> List[str]:
    return [c.strip() for c in line.split("|")[1:-1]]


def parse_markdown_table(content: str) -> AggregatedTable:
    """First contiguous pipe table in `content`; header, separator, then rows."""
    if not content:
        return AggregatedTable()

    table_lines = []
    in_table = False
    for line in content.split("\n"):
        line = line.strip()
        if not line:
            continue
        if line.startswith("|") and line.endswith("|"):
            table_lines.append(line)
            in_table = True
        elif in_table and not line.startswith("|"):
            break

    if len(table_lines) < 2:
        return AggregatedTable()
    headers = _cells(table_lines[0])
    rows = [_cells(line) for line in table_lines[2:]]
    return AggregatedTable(headers=headers, rows=rows)


def aggregate(results: Mapping[str, AnalysisResult]) -> AggregatedTable:
    """
    One table from every successful result, ordered by completion time.

    The first result with a header defines it; later headers are dropped
    because every group answers the same prompt.
    """
    finished = [r for r in results.values() if r.is_complete and not r.has_error and r.content]
    finished.sort(key=lambda r: r.sort_key)

    table = AggregatedTable()
    for result in finished:
        parsed = parse_markdown_table(result.content)
        if not parsed.headers:
            logger.debug("No table found in result for %s", result.group_name)
            continue
        if not table.headers:
            table.headers = parsed.headers
        table.rows.extend(parsed.rows)
    return table


def _strict_array(text: str) -> List[str]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(str(e)) from e
    if not isinstance(value, list):
        raise ParseError("not a JSON array")
    return [v if isinstance(v, str) else json.dumps(v, ensure_ascii=False) for v in value]


def parse_json_array(cell: str) -> List[str]:
    """Strict JSON first, then a bracket-stripping comma split."""
    if not cell:
        return []
    cleaned = cell.replace("`", "").strip()
    try:
        return _strict_array(cleaned)
    except ParseError:
        loose = re.sub(r"[\[\]\"`]", "", cleaned).strip()
        return [item.strip() for item in loose.split(",") if item.strip()]


def render_cell(cell: str) -> Union[str, List[str]]:
    """Array-shaped cells (leading `[`, or both brackets) become a list of items."""
    if cell.replace("`", "").strip().startswith("[") or ("[" in cell and "]" in cell):
        return parse_json_array(cell)
    return cell


def to_markdown(table: AggregatedTable) -> str:
    if not table.headers:
        return ""
    lines = ["| " + " | ".join(table.headers) + " |",
             "| " + " | ".join("---" for _ in table.headers) + " |"]
    lines.extend("| " + " | ".join(row) + " |" for row in table.rows)
    return "\n".join(lines)


def export_markdown(table: AggregatedTable, out_dir: str) -> pathlib.Path:
    if table.is_empty():
        raise ValidationError("there is no table data to export")
    content = to_markdown(table)
    stamp = datetime.datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    path = pathlib.Path(out_dir) / f"analysis_{stamp}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content + "\n", encoding="utf-8")
    return path


def progress_label(group_name: str) -> str:
    m = RANGE_RE.search(group_name or "")
    if not m:
        return f"analysing {group_name}"
    start, end = m.group(1), m.group(2) or m.group(1)
    unit = "paragraphs" if group_name.lower().startswith("paragraph") else "chapters"
    return f"analysing {unit} {start}-{end}"


def summarize_results(results: Mapping[str, AnalysisResult]) -> Dict[str, int]:
    done = [r for r in results.values() if r.is_complete]
    return {
        "total": len(results),
        "completed": len(done),
        "failed": sum(1 for r in done if r.has_error),
    }

#!/usr/bin/env python3
import sys, time, signal, hashlib, logging, pathlib, argparse
from typing import Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeElapsedColumn

from . import __version__
from .aggregator import aggregate, export_markdown, progress_label, render_cell, summarize_results, to_markdown
from .cache_store import (ANALYSIS, CONVERSION, NAMESPACES, SEGMENTATION, CacheStore,
                          source_descriptor_for)
from .client import CompletionClient
from .config import (Settings, load_saved_settings, load_settings, mask_api_key, save_settings,
                     update_setting, SETTINGS_PATH)
from .epub_loader import (ConversionResult, convert_epub_to_text, epub_metadata, read_text_source,
                          source_from_conversion)
from .errors import NovelscopeError, ValidationError
from .models import AggregatedTable, AnalysisQueueItem, AnalysisResult, ChapterGroup, SourceDocument
from .orchestrator import AnalysisOrchestrator, CancelToken, ItemProgress, RunStatus
from .segmenter import segment_text, write_groups

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # requests/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------- Sources ----------------
def load_source(book_path: str, cache: CacheStore) -> Tuple[SourceDocument, str]:
    """Plain text as-is; EPUB converted to text (cached). Returns (document, origin)."""
    path = pathlib.Path(book_path)
    if path.suffix.lower() != ".epub":
        return read_text_source(book_path), "txt"

    descriptor = source_descriptor_for(path)
    cached = cache.get(CONVERSION, descriptor)
    if cached:
        result = ConversionResult.from_dict(cached)
        console.print(f"[dim]Using cached conversion of {path.name}[/dim]")
    else:
        with console.status("[bold cyan]Converting EPUB to text…[/bold cyan]"):
            result = convert_epub_to_text(book_path)
        cache.put(CONVERSION, descriptor, result.to_dict())
    console.print(f"[green]{path.name}[/green] → {result.file_name}: "
                  f"{result.chapter_count} chapters, ≈{round(result.char_count / 1000)}k characters")
    return source_from_conversion(result, path), "epub"


def segment_source(book_path: str, doc: SourceDocument, origin: str, group_size: int,
                   cache: CacheStore) -> List[ChapterGroup]:
    descriptor = source_descriptor_for(book_path)
    split_settings = {"group_size": group_size, "origin": origin}
    cached = cache.get(SEGMENTATION, descriptor, split_settings)
    if cached is not None:
        console.print(f"[dim]Using cached split of {doc.name} (group size {group_size})[/dim]")
        return [ChapterGroup.from_dict(g) for g in cached]
    groups = segment_text(doc.raw_content, group_size)
    cache.put(SEGMENTATION, descriptor, [g.to_dict() for g in groups], split_settings)
    return groups


def analysis_source(group: ChapterGroup) -> str:
    digest = hashlib.sha1(group.content.encode("utf-8")).hexdigest()[:16]
    return f"{group.name}:{digest}"


def result_from_payload(name: str, payload, fallback_time: float = 0.0) -> Optional[AnalysisResult]:
    """A completed result rebuilt from a cached payload; None when the payload is unusable."""
    if not isinstance(payload, dict) or not isinstance(payload.get("content"), str) or not payload["content"]:
        return None
    completed = payload.get("completed_at")
    if not isinstance(completed, (int, float)) or isinstance(completed, bool):
        completed = fallback_time
    return AnalysisResult(group_name=name, content=payload["content"], is_complete=True,
                          updated_at=completed, completed_at=completed)


def cached_results(cache: CacheStore, document: Optional[str] = None) -> Dict[str, AnalysisResult]:
    results: Dict[str, AnalysisResult] = {}
    for entry in reversed(cache.list_namespace(ANALYSIS)):   # oldest first
        payload = entry.payload
        if not isinstance(payload, dict):
            continue
        if document and payload.get("document") != document:
            continue
        name = payload.get("group_name") or entry.source.get("name", entry.key)
        result = result_from_payload(name, payload, entry.created_at)
        if result is not None:
            results[name] = result
    return results


# ---------------- Rendering ----------------
def render_table(table: AggregatedTable, title: str = "Chapter analysis") -> Table:
    out = Table(title=title, show_lines=True)
    for header in table.headers:
        out.add_column(escape(header))
    for row in table.rows:
        cells = []
        for cell in row:
            value = render_cell(cell)
            if isinstance(value, list):
                cells.append(" ".join(f"[cyan]‹{escape(tag)}›[/cyan]" for tag in value))
            else:
                cells.append(escape(value))
        out.add_row(*cells)
    return out


def show_groups(groups: List[ChapterGroup], title: str) -> None:
    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right"); table.add_column("Group"); table.add_column("Characters", justify="right")
    for i, g in enumerate(groups, start=1):
        table.add_row(str(i), g.name, str(len(g.content)))
    console.print(table)


# ---------------- Commands ----------------
def cmd_convert(args, settings: Settings, cache: CacheStore) -> int:
    if pathlib.Path(args.book).suffix.lower() != ".epub":
        raise ValidationError("convert expects an .epub file")
    doc, _ = load_source(args.book, cache)
    meta = epub_metadata(args.book)
    if meta:
        console.print(Panel.fit("\n".join(f"{k}: {v}" for k, v in meta.items()), title="Metadata", style="bold blue"))
    out = pathlib.Path(args.out or settings.output_dir) / doc.name
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(doc.raw_content, encoding="utf-8")
    console.print(f"[green]Wrote[/green] {out}")
    return 0


def cmd_split(args, settings: Settings, cache: CacheStore) -> int:
    doc, origin = load_source(args.book, cache)
    groups = segment_source(args.book, doc, origin, args.group_size or settings.group_size, cache)
    if not groups:
        raise ValidationError(f"{doc.name} has no text to split")
    show_groups(groups, f"Chapter groups ({doc.name})")
    written = write_groups(groups, args.out or settings.output_dir, as_zip=args.zip)
    for path in written:
        console.print(f"[green]Wrote[/green] {path}")
    return 0


def _install_cancel_handler(orchestrator: AnalysisOrchestrator, token: CancelToken):
    def handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        console.print("\n[yellow]Cancelling… (press Ctrl-C again to abort immediately)[/yellow]")
        orchestrator.cancel()
    return signal.signal(signal.SIGINT, handler)


def cmd_analyze(args, settings: Settings, cache: CacheStore) -> int:
    document = ""
    if args.book:
        doc, origin = load_source(args.book, cache)
        document = doc.name
        groups = segment_source(args.book, doc, origin, args.group_size or settings.group_size, cache)
        only = set(args.only or [])
        queue = [AnalysisQueueItem(g, selected=not only or g.name in only) for g in groups]
        cache.save_queue(queue)
    else:
        queue = cache.load_queue()
        if not queue:
            raise ValidationError("no BOOK given and no saved analysis queue to resume")
        console.print(f"[dim]Resuming saved queue of {len(queue)} group(s)[/dim]")

    signature = settings.analysis_signature()
    selected = [item.group for item in queue if item.selected]
    results: Dict[str, AnalysisResult] = {}
    pending: List[ChapterGroup] = []
    for g in selected:
        hit = None if args.force else result_from_payload(g.name, cache.get(ANALYSIS, analysis_source(g), signature))
        if hit is not None:
            results[g.name] = hit
        else:
            pending.append(g)

    console.rule(f"[bold]Analysis[/bold]  {document or 'saved queue'}")
    console.print(f"API: [cyan]{settings.base_url}[/cyan]  |  Model: [magenta]{settings.model}[/magenta]  |  "
                  f"Key: {mask_api_key(settings.api_key)}")
    console.print(f"{len(selected)} group(s) selected, {len(results)} cached, {len(pending)} to analyse")

    if pending:
        orchestrator = AnalysisOrchestrator(CompletionClient(settings), settings)
        token = CancelToken()

        def on_item_complete(name, content, index, total, error=None):
            if error:
                console.print(f"\n[red]✗ {index}/{total}[/red] {escape(error)}")
                return
            console.print(f"\n[green]✓ {index}/{total}[/green] {name}")
            cache.put(ANALYSIS, analysis_source(next(g for g in pending if g.name == name)),
                      {"group_name": name, "content": content, "document": document,
                       "completed_at": time.time()}, signature)

        previous = _install_cancel_handler(orchestrator, token)
        try:
            if args.quiet:
                with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                              BarColumn(), TimeElapsedColumn(), console=console, transient=True) as progress:
                    task = progress.add_task("Analysing", total=len(pending))

                    def on_progress(event: ItemProgress):
                        progress.update(task, description=progress_label(event.group_name))

                    def on_done(name, content, index, total, error=None):
                        on_item_complete(name, content, index, total, error=error)
                        progress.advance(task)

                    outcome = orchestrator.run(pending, on_progress, on_done, cancel_token=token)
            else:
                current = {"name": None}

                def on_progress(event: ItemProgress):
                    if current["name"] != event.group_name:
                        current["name"] = event.group_name
                        console.print(Panel.fit(f"[bold]{event.index}/{event.total}[/bold] {event.group_name}",
                                                style="bold blue"))
                    console.out(event.text, end="", highlight=False,
                                style="yellow" if event.notice else None)

                outcome = orchestrator.run(pending, on_progress, on_item_complete, cancel_token=token)
        finally:
            signal.signal(signal.SIGINT, previous)

        results.update(outcome.results)
        if outcome.status is RunStatus.CANCELLED:
            console.print(f"[yellow]Cancelled after {outcome.completed_count} group(s).[/yellow]")

    stats = summarize_results(results)
    console.rule("[bold green]Done[/bold green]")
    console.print(f"Completed: {stats['completed']}/{len(selected)}  |  Failed: {stats['failed']}")
    return _emit_table(aggregate(results), args.out or settings.output_dir)


def _emit_table(table: AggregatedTable, out_dir: str) -> int:
    if table.is_empty():
        console.print("[yellow]No table rows could be recovered from the results.[/yellow]")
        return 1
    console.print(render_table(table))
    path = export_markdown(table, out_dir)
    console.print(f"[green]Exported[/green] {len(table.rows)} row(s) → {path}")
    return 0


def cmd_export(args, settings: Settings, cache: CacheStore) -> int:
    table = aggregate(cached_results(cache, args.document))
    if args.stdout:
        if table.is_empty():
            raise ValidationError("there is no table data to export")
        print(to_markdown(table))
        return 0
    return _emit_table(table, args.out or settings.output_dir)


def cmd_ping(args, settings: Settings, cache: CacheStore) -> int:
    status = CompletionClient(settings).test_connection()
    style = "green" if status.ok else "red"
    console.print(f"[{style}]{settings.base_url}: {status.message}[/{style}]")
    return 0 if status.ok else 1


def cmd_cache(args, settings: Settings, cache: CacheStore) -> int:
    namespaces = [args.namespace] if args.namespace else list(NAMESPACES)
    if args.action == "clear":
        if args.namespace:
            cache.evict_namespace(args.namespace)
        else:
            cache.clear_all()
        console.print(f"[green]Cleared[/green] {', '.join(namespaces)}")
        return 0

    table = Table(title=f"Cache ({cache.path})")
    table.add_column("Namespace"); table.add_column("Source"); table.add_column("Settings"); table.add_column("Age")
    now = time.time()
    for ns in namespaces:
        for entry in cache.list_namespace(ns):
            age = int(now - entry.created_at)
            table.add_row(ns, str(entry.source.get("name", "")), str(entry.settings or ""),
                          f"{age // 60}m{age % 60:02d}s")
    console.print(table)
    queue = cache.load_queue()
    if queue and (not args.namespace or args.namespace == ANALYSIS):
        console.print(f"Saved queue: {sum(1 for q in queue if q.selected)}/{len(queue)} selected")
    return 0


def cmd_config(args, settings: Settings, cache: CacheStore) -> int:
    if args.action == "set":
        if not args.key or args.value is None:
            raise ValidationError("usage: config set KEY VALUE")
        updated = update_setting(load_saved_settings(args.settings), args.key, args.value)
        path = save_settings(updated, args.settings)
        console.print(f"[green]Saved[/green] {args.key} to {path}")
        return 0

    table = Table(title="Settings")
    table.add_column("Key"); table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, mask_api_key(value) if key == "api_key" else str(value))
    console.print(table)
    return 0


# ---------------- CLI ----------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="novelscope",
                                 description="Split novels into chapter groups and build a chapter-analysis table with an LLM.")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    ap.add_argument("--settings", type=pathlib.Path, default=SETTINGS_PATH, help="Settings JSON file")
    ap.add_argument("--cache", help="Cache snapshot file (default from settings)")
    ap.add_argument("--base-url", help="OpenAI-compatible API base URL")
    ap.add_argument("--model", help="Model name")
    ap.add_argument("--temperature", type=float, help="Sampling temperature (0-1)")
    ap.add_argument("--max-tokens", type=int, help="Output token budget; also bounds input size")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("convert", help="Convert an EPUB to plain text")
    p.add_argument("book", help="Path to the .epub file")
    p.add_argument("--out", help="Output directory")
    p.set_defaults(func=cmd_convert)

    p = sub.add_parser("split", help="Split a book into chapter groups")
    p.add_argument("book", help="Path to the book (.txt or .epub)")
    p.add_argument("--group-size", type=int, help="Chapters (or paragraphs) per group")
    p.add_argument("--out", help="Output directory")
    p.add_argument("--zip", action="store_true", help="Write one zip archive instead of separate files")
    p.set_defaults(func=cmd_split)

    p = sub.add_parser("analyze", help="Analyse chapter groups and export the merged table")
    p.add_argument("book", nargs="?", help="Path to the book; omit to resume the saved queue")
    p.add_argument("--group-size", type=int, help="Chapters (or paragraphs) per group")
    p.add_argument("--only", nargs="+", metavar="GROUP", help="Analyse only these group names")
    p.add_argument("--force", action="store_true", help="Ignore cached analysis results")
    p.add_argument("--quiet", action="store_true", help="Show a progress bar instead of streamed text")
    p.add_argument("--out", help="Directory for the exported markdown table")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("export", help="Export the merged table from cached analysis results")
    p.add_argument("--document", help="Only results from this document name")
    p.add_argument("--stdout", action="store_true", help="Print markdown instead of writing a file")
    p.add_argument("--out", help="Output directory")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("ping", help="Check that the API is reachable with the configured key")
    p.set_defaults(func=cmd_ping)

    p = sub.add_parser("cache", help="Inspect or clear the cache")
    p.add_argument("action", choices=["list", "clear"])
    p.add_argument("namespace", nargs="?", choices=list(NAMESPACES))
    p.set_defaults(func=cmd_cache)

    p = sub.add_parser("config", help="Show or change saved settings")
    p.add_argument("action", choices=["show", "set"])
    p.add_argument("key", nargs="?")
    p.add_argument("value", nargs="?")
    p.set_defaults(func=cmd_config)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        settings = load_settings(args.settings).merged(
            base_url=args.base_url, model=args.model,
            temperature=args.temperature, max_tokens=args.max_tokens,
        )
        cache = CacheStore(args.cache or settings.cache_path)
        return args.func(args, settings, cache)
    except ValidationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 2
    except NovelscopeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()

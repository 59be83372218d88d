"""
Sequential streaming analysis of chapter groups.

One group is analysed at a time: the backend is rate limited and the
streamed text must stay attributable to a single item. A failing item is
reported and the batch moves on; only an empty queue or a missing API key
stops a batch before it starts.

Cancellation is cooperative. The token is checked before each item, before
each received delta and during the pause between items. An in-flight HTTP
request is closed when its stream is abandoned, but nothing is interrupted
mid-read.
"""
import time, logging, threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from .client import CompletionClient
from .config import Settings
from .errors import NovelscopeError, PreconditionFailed, ValidationError
from .models import AnalysisResult, ChapterGroup
from .prompts import build_analysis_prompt

logger = logging.getLogger(__name__)

MIN_CONTENT_CHARS = 100
CHARS_PER_TOKEN = 3           # rough budget: content above max_tokens * 3 chars is cut
TRUNCATE_FRACTION = 0.8


class RunStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ItemStatus(Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        return self._event.wait(seconds)


# ---------------- Events ----------------
@dataclass
class ItemStarted:
    group_name: str
    index: int          # 1-based
    total: int


@dataclass
class ItemProgress:
    group_name: str
    index: int
    total: int
    text: str
    notice: bool = False    # synthetic message, not model output


@dataclass
class ItemFinished:
    group_name: str
    index: int
    total: int
    content: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchFinished:
    status: RunStatus
    completed: int
    total: int


Event = Union[ItemStarted, ItemProgress, ItemFinished, BatchFinished]


@dataclass
class ItemOutcome:
    status: ItemStatus
    content: Optional[str] = None
    error: Optional[str] = None
    finished_at: Optional[float] = None


@dataclass
class BatchOutcome:
    status: RunStatus = RunStatus.IDLE
    items: Dict[str, ItemOutcome] = field(default_factory=dict)
    results: Dict[str, AnalysisResult] = field(default_factory=dict)

    def _count(self, *statuses: ItemStatus) -> int:
        return sum(1 for o in self.items.values() if o.status in statuses)

    @property
    def completed_count(self) -> int:
        return self._count(ItemStatus.SUCCEEDED, ItemStatus.FAILED)

    @property
    def succeeded_count(self) -> int:
        return self._count(ItemStatus.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return self._count(ItemStatus.FAILED)


ProgressCallback = Callable[[ItemProgress], None]
CompleteCallback = Callable[..., None]


class AnalysisOrchestrator:
    def __init__(self, client: CompletionClient, settings: Settings, item_delay: Optional[float] = None):
        self.client = client
        self.settings = settings
        self.item_delay = settings.item_delay if item_delay is None else item_delay
        self.state = RunStatus.IDLE
        self._active: Optional[CancelToken] = None

    def cancel(self) -> None:
        if self._active is not None:
            self._active.cancel()

    def prepare_content(self, content: str) -> Tuple[str, Optional[str]]:
        """Validated text to send, plus a truncation notice when it had to be cut."""
        if not content or not content.strip():
            raise ValidationError("content is empty")
        if len(content) < MIN_CONTENT_CHARS:
            raise ValidationError(f"content is too short (at least {MIN_CONTENT_CHARS} characters needed)")
        limit = self.settings.max_tokens * CHARS_PER_TOKEN
        if len(content) <= limit:
            return content, None
        cut = content[:int(len(content) * TRUNCATE_FRACTION)]
        notice = (f"\nNote: the content is long; only the first 80% "
                  f"(about {round(len(cut) / 1000)}k characters) will be analysed\n\n")
        return cut, notice

    def iter_events(self, groups: List[ChapterGroup], cancel_token: Optional[CancelToken] = None) -> Iterator[Event]:
        if not groups:
            raise PreconditionFailed("no chapter groups queued for analysis")
        if not self.settings.api_key:
            raise PreconditionFailed("no API key configured")
        token = cancel_token or CancelToken()
        self._active = token
        return self._events(list(groups), token)

    def _events(self, groups: List[ChapterGroup], token: CancelToken) -> Iterator[Event]:
        total = len(groups)
        completed = 0
        self.state = RunStatus.RUNNING
        logger.info("Analysing %d group(s) with %s", total, self.settings.model)
        try:
            for i, group in enumerate(groups):
                if token.cancelled:
                    break
                index = i + 1
                yield ItemStarted(group.name, index, total)

                text_parts = []
                error = None
                try:
                    content, notice = self.prepare_content(group.content)
                    if notice:
                        logger.warning("%s: content truncated to %d characters", group.name, len(content))
                        yield ItemProgress(group.name, index, total, notice, notice=True)
                        if token.cancelled:
                            break
                    stream = self.client.stream_chat(build_analysis_prompt(content))
                    try:
                        for delta in stream:
                            if token.cancelled:
                                break
                            text_parts.append(delta)
                            yield ItemProgress(group.name, index, total, delta)
                    finally:
                        stream.close()
                    if token.cancelled:
                        break
                    if not "".join(text_parts).strip():
                        raise ValidationError("the API returned an empty result")
                except NovelscopeError as e:
                    error = f"analysis of {group.name} failed: {e}"
                    logger.error("%s", error)

                if token.cancelled:
                    break
                completed += 1
                if error is None:
                    yield ItemFinished(group.name, index, total, content="".join(text_parts))
                else:
                    yield ItemFinished(group.name, index, total, error=error)

                if index < total and token.wait(self.item_delay):
                    break
        finally:
            if self._active is token:
                self._active = None

        self.state = RunStatus.CANCELLED if token.cancelled else RunStatus.COMPLETED
        if self.state is RunStatus.CANCELLED:
            logger.warning("Analysis cancelled after %d of %d group(s)", completed, total)
        yield BatchFinished(self.state, completed, total)

    def run(self, groups: List[ChapterGroup],
            on_progress: Optional[ProgressCallback] = None,
            on_item_complete: Optional[CompleteCallback] = None,
            cancel_token: Optional[CancelToken] = None) -> BatchOutcome:
        """
        Analyse `groups` in order and return one outcome per finished group.

        ``on_item_complete(name, content, index, total, error=None)`` fires once
        per finished group; ``content`` is None for a failed one.
        """
        outcome = BatchOutcome(status=RunStatus.RUNNING)
        outcome.items = {g.name: ItemOutcome(ItemStatus.PENDING) for g in groups}

        for event in self.iter_events(groups, cancel_token):
            if isinstance(event, ItemStarted):
                outcome.items[event.group_name] = ItemOutcome(ItemStatus.STREAMING)
                outcome.results[event.group_name] = AnalysisResult(event.group_name)
            elif isinstance(event, ItemProgress):
                if not event.notice:
                    outcome.results[event.group_name].append(event.text)
                if on_progress:
                    on_progress(event)
            elif isinstance(event, ItemFinished):
                result = outcome.results[event.group_name]
                result.finish(error=event.error)
                status = ItemStatus.SUCCEEDED if event.ok else ItemStatus.FAILED
                outcome.items[event.group_name] = ItemOutcome(status, event.content, event.error, time.time())
                if on_item_complete:
                    on_item_complete(event.group_name, event.content, event.index, event.total, error=event.error)
            elif isinstance(event, BatchFinished):
                outcome.status = event.status
        return outcome

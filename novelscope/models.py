import time
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Dict, Any


@dataclass(frozen=True)
class SourceDocument:
    name: str
    raw_content: str
    size_bytes: int
    modified: Optional[float] = None


@dataclass
class ChapterGroup:
    name: str       # e.g. "Chapters 1-50"; the join key across the pipeline
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChapterGroup":
        return cls(name=str(data.get("name", "")), content=str(data.get("content", "")))


@dataclass
class AnalysisQueueItem:
    group: ChapterGroup
    selected: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.group.name, "content": self.group.content, "selected": self.selected}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisQueueItem":
        return cls(group=ChapterGroup.from_dict(data), selected=bool(data.get("selected", True)))


@dataclass
class AnalysisResult:
    """Streaming result for one group; mutated in place until complete."""
    group_name: str
    content: str = ""
    is_complete: bool = False
    has_error: bool = False
    updated_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def append(self, text: str) -> None:
        if self.is_complete:
            return
        self.content += text
        self.updated_at = time.time()

    def finish(self, error: Optional[str] = None) -> None:
        # Terminal states are immutable until explicitly cleared.
        if self.is_complete:
            return
        if error is not None:
            self.content = error
            self.has_error = True
        self.is_complete = True
        self.updated_at = self.completed_at = time.time()

    @property
    def sort_key(self) -> float:
        if self.completed_at is not None:
            return self.completed_at
        return self.updated_at or 0.0


@dataclass
class AggregatedTable:
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.headers or not self.rows

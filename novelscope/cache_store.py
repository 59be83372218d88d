"""
Composite-key cache with per-namespace expiry, persisted as one JSON snapshot.

Keys are derived from the identity of a source (file name, size and
modification time, or a caller-supplied string) plus the canonical JSON of
the settings that shaped the result. Callers never build keys themselves.

Every mutation rewrites the snapshot before returning. Persistence problems
are logged and swallowed: a broken cache only costs extra network calls.
"""
import os, json, time, logging, pathlib, threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import StorageError
from .models import AnalysisQueueItem

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2

CONVERSION = "conversion"
SEGMENTATION = "segmentation"
ANALYSIS = "analysis"
NAMESPACES = (CONVERSION, SEGMENTATION, ANALYSIS)

HOUR = 60 * 60
TTL_SECONDS = {
    CONVERSION: HOUR,
    SEGMENTATION: HOUR,
    ANALYSIS: 24 * HOUR,
}


@dataclass(frozen=True)
class SourceDescriptor:
    name: str
    size: int = 0
    modified: Optional[float] = None

    @property
    def identity(self) -> str:
        return f"{self.name}_{self.size}_{self.modified}"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "size": self.size, "modified": self.modified}


Source = Union[SourceDescriptor, str]


def source_descriptor_for(path: Union[str, pathlib.Path]) -> SourceDescriptor:
    p = pathlib.Path(path)
    st = p.stat()
    return SourceDescriptor(name=p.name, size=st.st_size, modified=st.st_mtime)


def _identity(source: Source) -> str:
    if isinstance(source, SourceDescriptor):
        return source.identity
    return str(source)


def _describe(source: Source) -> Dict[str, Any]:
    if isinstance(source, SourceDescriptor):
        return source.to_dict()
    return {"name": str(source)}


def derive_key(source: Source, settings: Optional[Dict[str, Any]] = None) -> str:
    settings_json = json.dumps(settings or {}, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return f"{_identity(source)}__{settings_json}"


@dataclass
class CacheEntry:
    key: str
    source: Dict[str, Any]
    payload: Any
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "source": self.source,
            "payload": self.payload,
            "settings": self.settings,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "CacheEntry":
        # v1 snapshots used result / timestamp (ms) / file
        created = data.get("created_at")
        if created is None and data.get("timestamp") is not None:
            created = float(data["timestamp"]) / 1000.0
        return cls(
            key=str(data.get("key") or key),
            source=data.get("source") or data.get("file") or {},
            payload=data.get("payload", data.get("result")),
            settings=data.get("settings") or {},
            created_at=float(created or 0.0),
        )


class CacheStore:
    def __init__(self, path: Optional[Union[str, pathlib.Path]] = None,
                 clock: Callable[[], float] = time.time,
                 ttl: Optional[Dict[str, float]] = None):
        self.path = pathlib.Path(path) if path else None
        self.clock = clock
        self.ttl = dict(TTL_SECONDS)
        if ttl:
            self.ttl.update(ttl)
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, CacheEntry]] = {ns: {} for ns in NAMESPACES}
        self._queue: List[AnalysisQueueItem] = []
        self._load()

    # ---------------- Public API ----------------
    def put(self, namespace: str, source: Source, payload: Any, settings: Optional[Dict[str, Any]] = None) -> str:
        self._check_namespace(namespace)
        key = derive_key(source, settings)
        entry = CacheEntry(key=key, source=_describe(source), payload=payload,
                           settings=dict(settings or {}), created_at=self.clock())
        with self._lock:
            slots = dict(self._data[namespace])
            slots.pop(key, None)   # re-insert so insertion order tracks recency
            slots[key] = entry
            self._data[namespace] = slots
            self._persist()
        return key

    def get(self, namespace: str, source: Source, settings: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        self._check_namespace(namespace)
        key = derive_key(source, settings)
        entry = self._data[namespace].get(key)
        if entry is None:
            return None
        if self._expired(namespace, entry):
            logger.debug("Cache entry expired in %s: %s", namespace, key)
            with self._lock:
                slots = dict(self._data[namespace])
                slots.pop(key, None)
                self._data[namespace] = slots
                self._persist()
            return None
        return entry.payload

    def list_namespace(self, namespace: str) -> List[CacheEntry]:
        """Live entries, newest first. Expired ones are evicted on the way."""
        self._check_namespace(namespace)
        with self._lock:
            slots = self._data[namespace]
            live = {k: e for k, e in slots.items() if not self._expired(namespace, e)}
            if len(live) != len(slots):
                self._data[namespace] = live
                self._persist()
        return sorted(live.values(), key=lambda e: e.created_at, reverse=True)

    def evict_namespace(self, namespace: str) -> None:
        self._check_namespace(namespace)
        with self._lock:
            self._data[namespace] = {}
            if namespace == ANALYSIS:
                self._queue = []
            self._persist()

    def clear_all(self) -> None:
        with self._lock:
            self._data = {ns: {} for ns in NAMESPACES}
            self._queue = []
            self._persist()

    def save_queue(self, items: List[AnalysisQueueItem]) -> None:
        with self._lock:
            self._queue = list(items)
            self._persist()

    def load_queue(self) -> List[AnalysisQueueItem]:
        return list(self._queue)

    # ---------------- Internals ----------------
    def _check_namespace(self, namespace: str) -> None:
        if namespace not in NAMESPACES:
            raise KeyError(f"unknown cache namespace: {namespace}")

    def _expired(self, namespace: str, entry: CacheEntry) -> bool:
        return self.clock() - entry.created_at > self.ttl[namespace]

    def snapshot(self) -> Dict[str, Any]:
        data = self._data
        return {
            "version": SNAPSHOT_VERSION,
            CONVERSION: {k: e.to_dict() for k, e in data[CONVERSION].items()},
            # ordered [key, entry] pairs; rebuilt into a keyed store on load
            SEGMENTATION: [[k, e.to_dict()] for k, e in data[SEGMENTATION].items()],
            ANALYSIS: {k: e.to_dict() for k, e in data[ANALYSIS].items()},
            "queue": [item.to_dict() for item in self._queue],
        }

    def _write_snapshot(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(json.dumps(self.snapshot(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"could not save cache to {self.path}: {e}") from e

    def _persist(self) -> None:
        if self.path is None:
            return
        try:
            self._write_snapshot()
        except StorageError as e:
            logger.warning("%s", e)

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Could not load cache from %s (%s); starting empty", self.path, e)
            return
        if not isinstance(raw, dict):
            logger.warning("Cache snapshot %s has unexpected shape; starting empty", self.path)
            return

        for ns in NAMESPACES:
            section = raw.get(ns)
            if isinstance(section, dict):
                pairs = list(section.items())
            elif isinstance(section, list):
                pairs = [p for p in section if isinstance(p, (list, tuple)) and len(p) == 2]
            else:
                pairs = []
            slots = {}
            for key, value in pairs:
                if isinstance(value, dict):
                    entry = CacheEntry.from_dict(str(key), value)
                    slots[entry.key] = entry
            self._data[ns] = slots

        queue = raw.get("queue")
        if isinstance(queue, list):
            self._queue = [AnalysisQueueItem.from_dict(q) for q in queue if isinstance(q, dict)]
        logger.debug("Loaded cache snapshot %s (version %s)", self.path, raw.get("version", 1))

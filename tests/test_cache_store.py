import json
import logging

import pytest

from novelscope.cache_store import (
    ANALYSIS, CONVERSION, SEGMENTATION, CacheStore, SourceDescriptor, derive_key, source_descriptor_for,
)
from novelscope.models import AnalysisQueueItem, ChapterGroup


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


BOOK = SourceDescriptor(name="book.txt", size=1234, modified=1700000000.0)


def test_put_get_roundtrip():
    store = CacheStore()
    store.put(SEGMENTATION, BOOK, [{"name": "Chapters 1-2"}], {"group_size": 2})

    assert store.get(SEGMENTATION, BOOK, {"group_size": 2}) == [{"name": "Chapters 1-2"}]


def test_different_settings_miss():
    store = CacheStore()
    store.put(SEGMENTATION, BOOK, ["a"], {"group_size": 2})

    assert store.get(SEGMENTATION, BOOK, {"group_size": 3}) is None
    assert store.get(SEGMENTATION, SourceDescriptor("book.txt", 1235, 1700000000.0), {"group_size": 2}) is None


def test_settings_key_order_does_not_matter():
    store = CacheStore()
    store.put(ANALYSIS, "Chapters 1-2:abc", "result", {"model": "m", "temperature": 0.5})

    assert store.get(ANALYSIS, "Chapters 1-2:abc", {"temperature": 0.5, "model": "m"}) == "result"
    assert derive_key(BOOK, {"b": 1, "a": 2}) == derive_key(BOOK, {"a": 2, "b": 1})


def test_namespaces_are_independent():
    store = CacheStore()
    store.put(CONVERSION, BOOK, "text")

    assert store.get(SEGMENTATION, BOOK) is None
    with pytest.raises(KeyError):
        store.get("nope", BOOK)


def test_entries_expire_after_ttl():
    clock = FakeClock()
    store = CacheStore(clock=clock)
    store.put(SEGMENTATION, BOOK, ["a"])
    store.put(ANALYSIS, "Chapters 1-1:x", "table")

    clock.now += 3600
    assert store.get(SEGMENTATION, BOOK) == ["a"]

    clock.now += 0.001
    assert store.get(SEGMENTATION, BOOK) is None
    assert store.list_namespace(SEGMENTATION) == []
    assert store.get(ANALYSIS, "Chapters 1-1:x") == "table"

    clock.now += 23 * 3600
    assert store.list_namespace(ANALYSIS) == []


def test_list_namespace_newest_first():
    clock = FakeClock()
    store = CacheStore(clock=clock)
    store.put(ANALYSIS, "a", 1)
    clock.now += 10
    store.put(ANALYSIS, "b", 2)

    assert [e.payload for e in store.list_namespace(ANALYSIS)] == [2, 1]


def test_snapshot_survives_restart(tmp_path):
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    store.put(CONVERSION, BOOK, {"content": "全文"})
    store.put(SEGMENTATION, BOOK, [{"name": "Chapters 1-1", "content": "x"}], {"group_size": 1})

    reloaded = CacheStore(path)

    assert reloaded.get(CONVERSION, BOOK) == {"content": "全文"}
    assert reloaded.get(SEGMENTATION, BOOK, {"group_size": 1}) == [{"name": "Chapters 1-1", "content": "x"}]


def test_segmentation_serialized_as_pairs(tmp_path):
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    key = store.put(SEGMENTATION, BOOK, ["x"], {"group_size": 5})

    raw = json.loads(path.read_text(encoding="utf-8"))

    assert raw["version"] == 2
    assert isinstance(raw[SEGMENTATION], list)
    assert raw[SEGMENTATION][0][0] == key
    assert raw[SEGMENTATION][0][1]["payload"] == ["x"]
    assert isinstance(raw[ANALYSIS], dict)


def test_missing_file_starts_empty(tmp_path):
    store = CacheStore(tmp_path / "absent.json")

    assert store.list_namespace(CONVERSION) == []
    assert store.load_queue() == []


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"segmentation": 5, "analysis": [[1]]}'])
def test_corrupt_snapshot_starts_empty(tmp_path, content):
    path = tmp_path / "cache.json"
    path.write_text(content, encoding="utf-8")

    store = CacheStore(path)

    assert store.list_namespace(SEGMENTATION) == []
    assert store.list_namespace(ANALYSIS) == []


def test_v1_snapshot_is_read(tmp_path):
    clock = FakeClock()
    key = derive_key(BOOK, {"group_size": 50})
    legacy = {
        "segmentation": [[key, {"result": [{"name": "Chapters 1-50"}],
                                "timestamp": (clock.now - 60) * 1000,
                                "file": {"name": "book.txt"},
                                "settings": {"group_size": 50}}]],
        "conversion": {},
    }
    path = tmp_path / "cache.json"
    path.write_text(json.dumps(legacy), encoding="utf-8")

    store = CacheStore(path, clock=clock)

    assert store.get(SEGMENTATION, BOOK, {"group_size": 50}) == [{"name": "Chapters 1-50"}]
    [entry] = store.list_namespace(SEGMENTATION)
    assert entry.created_at == pytest.approx(clock.now - 60)
    assert entry.source == {"name": "book.txt"}


def test_queue_roundtrip_and_eviction(tmp_path):
    path = tmp_path / "cache.json"
    store = CacheStore(path)
    items = [AnalysisQueueItem(ChapterGroup("Chapters 1-2", "abc")),
             AnalysisQueueItem(ChapterGroup("Chapters 3-4", "def"), selected=False)]
    store.save_queue(items)
    store.put(ANALYSIS, "Chapters 1-2:x", "table")

    reloaded = CacheStore(path)
    assert reloaded.load_queue() == items

    reloaded.evict_namespace(ANALYSIS)
    assert reloaded.load_queue() == []
    assert reloaded.get(ANALYSIS, "Chapters 1-2:x") is None
    assert CacheStore(path).load_queue() == []


def test_clear_all(tmp_path):
    store = CacheStore(tmp_path / "cache.json")
    store.put(CONVERSION, BOOK, "a")
    store.put(SEGMENTATION, BOOK, "b")
    store.save_queue([AnalysisQueueItem(ChapterGroup("g", "c"))])

    store.clear_all()

    for ns in (CONVERSION, SEGMENTATION, ANALYSIS):
        assert store.list_namespace(ns) == []
    assert store.load_queue() == []


def test_unwritable_path_is_not_fatal(tmp_path, caplog):
    blocker = tmp_path / "file.txt"
    blocker.write_text("x", encoding="utf-8")
    store = CacheStore(blocker / "cache.json")

    with caplog.at_level(logging.WARNING, logger="novelscope.cache_store"):
        store.put(CONVERSION, BOOK, "text")

    assert store.get(CONVERSION, BOOK) == "text"
    assert "could not save cache" in caplog.text


def test_source_descriptor_for_file(tmp_path):
    path = tmp_path / "novel.txt"
    path.write_text("hello", encoding="utf-8")

    desc = source_descriptor_for(path)

    assert desc.name == "novel.txt"
    assert desc.size == 5
    assert desc.identity.startswith("novel.txt_5_")

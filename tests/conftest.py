"""Shared fakes for the HTTP layer and sample texts."""
import os
import json

import pytest
import requests

from novelscope.config import Settings
from novelscope.models import ChapterGroup

TABLE_HEADER = "| 章节号 | 章节标题 | 章节核心剧情梗概 |\n| :--- | :--- | :--- |\n"


class FakeResponse:
    def __init__(self, status_code=200, lines=None, body=None, reason="OK"):
        self.status_code = status_code
        self._lines = lines or []
        self._body = body
        self.reason = reason
        self.closed = False

    def iter_lines(self):
        for line in self._lines:
            yield line.encode("utf-8") if isinstance(line, str) else line

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)


class FakeClient:
    """Scripted stand-in for CompletionClient: one script entry per call."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.prompts = []

    def stream_chat(self, prompt):
        self.prompts.append(prompt)
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script

        def gen():
            for delta in script:
                if isinstance(delta, Exception):
                    raise delta
                yield delta
        return gen()


def sse(*deltas, done=True):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]}, ensure_ascii=False)}" for d in deltas]
    if done:
        lines.append("data: [DONE]")
    return lines


def chapter_text(count, start=1, body="正文内容" * 20):
    return "".join(f"第{i}章 标题{i}\n{body}\n\n" for i in range(start, start + count))


def table_for(*rows):
    return TABLE_HEADER + "".join(f"| {n} | 标题{n} | 梗概{n} |\n" for n in rows)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in [v for v in os.environ if v.startswith("NOVELSCOPE_") and v != "NOVELSCOPE_HOME"]:
        monkeypatch.delenv(var)


@pytest.fixture
def settings():
    return Settings(api_key="sk-test-key-123456", item_delay=0)


@pytest.fixture
def groups():
    return [ChapterGroup(name=f"Chapters {i}-{i}", content=f"第{i}章\n" + "内容" * 60) for i in (1, 2, 3)]


@pytest.fixture
def request_error():
    return requests.ConnectionError("connection refused")

"""
Pytest configuration and shared fixtures for CodeAtlas tests.

Provides sample source trees, code units, scripted LLM adapters and
settings isolated from the developer's environment.
"""

from pathlib import Path
from typing import List

import pytest

from codeatlas.config import AISettings, CodeAtlasSettings, PipelineSettings, reset_settings, set_settings
from codeatlas.data.schemas import CodeUnit, UnitKind
from codeatlas.pipeline.llm_adapter import MockLLMAdapter

CREDENTIAL_VARIABLES = (
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "OPENAI_API_KEY",
    "CODEATLAS_GOOGLE_API_KEY",
    "CODEATLAS_GEMINI_API_KEY",
    "CODEATLAS_OPENAI_API_KEY",
)


class SleepRecorder:
    """Async stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep real API keys out of tests and drop cached settings."""
    for name in CREDENTIAL_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def no_sleep() -> SleepRecorder:
    """Sleep function that never waits."""
    return SleepRecorder()


@pytest.fixture
def settings(tmp_path: Path) -> CodeAtlasSettings:
    """Settings with no credentials and an index directory under tmp_path."""
    test_settings = CodeAtlasSettings(
        pipeline=PipelineSettings(index_dir=tmp_path / "indexes"),
        ai=AISettings(),
    )
    set_settings(test_settings)
    return test_settings


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """Create a small polyglot project tree."""
    project = tmp_path / "project"
    (project / "app").mkdir(parents=True)
    (project / "web").mkdir()
    (project / "svc").mkdir()
    (project / "node_modules" / "left-pad").mkdir(parents=True)

    (project / "app" / "models.py").write_text(
        '''import json
from app.storage import Store


class Repository(Store):
    """Keeps records in memory."""

    def __init__(self):
        self.items = {}

    def save(self, key, value):
        self.items[key] = json.dumps(value)
        return self.validate(key)

    def validate(self, key):
        return key in self.items


def build_repository():
    return Repository()
'''
    )

    (project / "app" / "storage.py").write_text(
        '''class Store:
    def flush(self):
        return None
'''
    )

    (project / "web" / "client.ts").write_text(
        '''import { Repository } from "../app/models";

export interface Fetcher {
    fetch(url: string): Promise<string>;
}

export class HttpClient implements Fetcher {
    async fetch(url: string): Promise<string> {
        return request(url);
    }
}

export function request(url: string): Promise<string> {
    return Promise.resolve(url);
}
'''
    )

    (project / "svc" / "server.go").write_text(
        '''package svc

import (
    "fmt"
    "net/http"
)

type Server struct {
    Port int
}

func (s *Server) Start() error {
    fmt.Println("starting")
    return http.ListenAndServe(fmt.Sprintf(":%d", s.Port), nil)
}

func NewServer(port int) *Server {
    return &Server{Port: port}
}
'''
    )

    (project / "svc" / "Handler.java").write_text(
        '''package svc;

import java.util.List;

public class Handler extends BaseHandler implements Runnable {
    public void run() {
        handle(List.of());
    }

    private int handle(List<String> items) {
        return items.size();
    }
}
'''
    )

    (project / "node_modules" / "left-pad" / "index.js").write_text(
        "export function leftPad(s) {\n    return s;\n}\n"
    )
    return project


@pytest.fixture
def sample_units() -> List[CodeUnit]:
    """Hand-built units spanning two files and two languages."""
    return [
        CodeUnit(
            id="a.run",
            kind=UnitKind.FUNCTION,
            language="python",
            file_path="app/a.py",
            source="def run():\n    return helper()",
            metadata={"imports": ["from helpers import Parser"]},
        ),
        CodeUnit(
            id="b_tools.Parser",
            kind=UnitKind.CLASS,
            language="python",
            file_path="lib/b_tools.py",
            source="class Parser:\n    def parse(self, text):\n        return text",
            metadata={"class_name": "Parser"},
        ),
        CodeUnit(
            id="b_tools.helper",
            kind=UnitKind.FUNCTION,
            language="python",
            file_path="lib/b_tools.py",
            source="def helper():\n    return 1",
        ),
        CodeUnit(
            id="client.HttpClient",
            kind=UnitKind.CLASS,
            language="typescript",
            file_path="web/client.ts",
            source="export class HttpClient implements Fetcher {\n    fetch(url: string): Promise<string> {}\n}",
            metadata={"class_name": "HttpClient", "interfaces": ["Fetcher"]},
        ),
        CodeUnit(
            id="client.Fetcher",
            kind=UnitKind.INTERFACE,
            language="typescript",
            file_path="web/client.ts",
            source="export interface Fetcher {\n    fetch(url: string): Promise<string>;\n}",
        ),
    ]


@pytest.fixture
def mock_llm() -> MockLLMAdapter:
    """LLM adapter that always returns a well-formed reply."""
    return MockLLMAdapter(
        default_reply=(
            '{"description": "Parses configuration text into structured records", '
            '"purpose": "Turns raw input into typed settings", '
            '"tags": ["parsing", "configuration", "io"], "complexity": "low"}'
        )
    )

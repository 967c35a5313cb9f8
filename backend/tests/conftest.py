"""
Shared fixtures: settings, fake model collaborators and an engine wired with
an in-memory run log.
"""

import sys
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from app.config import CredentialSource, EngineSettings
from app.models.graph import NodeType, WorkflowEdge, WorkflowNode
from app.models.node_registry import build_node_registry
from app.services.node_executors import ExecutorServices
from app.services.run_log import InMemoryRunLog
from app.services.workflow_executor import WorkflowEngine


class FakeTextCompleter:
    """Answers the intent classifier with `intent` and everything else with `reply`."""

    def __init__(self, intent: str = "TEXT", reply: str = "fake reply", fail_classifier: bool = False):
        self.intent = intent
        self.reply = reply
        self.fail_classifier = fail_classifier
        self.calls: list[dict] = []

    async def complete(self, system_prompt, user_text, temperature, max_tokens):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_text": user_text,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if max_tokens == 5 and temperature == 0:
            if self.fail_classifier:
                raise RuntimeError("classifier unavailable")
            return self.intent
        return self.reply


class FakeImageGenerator:
    def __init__(self, configured: bool = True, data: bytes = b"\x89PNG-fake"):
        self.configured = configured
        self.data = data
        self.prompts: list[str] = []

    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, prompt: str):
        self.prompts.append(prompt)
        return self.data, "image/png"


def make_node(node_id: str, node_type: NodeType = NodeType.TEXT, **data) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, data=data)


def make_edge(source: str, target: str, **kwargs) -> WorkflowEdge:
    return WorkflowEdge(id=f"{source}->{target}", source=source, target=target, **kwargs)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def credentials() -> CredentialSource:
    return CredentialSource({"FIREWORKS_API_KEY": "fw-test", "GEMINI_API_KEY": "gm-test"})


@pytest.fixture
def text_completer() -> FakeTextCompleter:
    return FakeTextCompleter()


@pytest.fixture
def image_generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def services(settings, credentials, text_completer, image_generator) -> ExecutorServices:
    return ExecutorServices(
        settings=settings,
        credentials=credentials,
        registry=build_node_registry(),
        text_completer=text_completer,
        image_generator=image_generator,
    )


@pytest.fixture
def run_log() -> InMemoryRunLog:
    return InMemoryRunLog()


@pytest.fixture
def engine(services, run_log) -> WorkflowEngine:
    return WorkflowEngine(services, run_log)


FAKE_FFMPEG = '''#!{python}
import sys

args = sys.argv[1:]
with open({log_path!r}, "a") as fh:
    fh.write(" ".join(args) + "\\n")

if "-vframes" in args:
    if {write_output!r}:
        with open(args[-1], "wb") as out:
            out.write(b"FRAME")
    sys.exit({extract_exit!r})

sys.stderr.write("Input #0, mov,mp4,m4a, from 'input.mp4':\\n")
sys.stderr.write("  {duration_line}\\n")
sys.stderr.write("At least one output file must be specified\\n")
sys.exit(1)
'''


def write_fake_ffmpeg(
    directory: Path,
    duration_line: str = "Duration: 00:00:10.00, start: 0.000000, bitrate: 1205 kb/s",
    extract_exit: int = 0,
    write_output: bool = True,
) -> tuple[Path, Path]:
    """
    Write an executable stand-in for ffmpeg. Probing prints `duration_line` to
    stderr; extraction writes a few bytes to the output path. Every
    invocation's arguments are appended to the returned log file.
    """
    script = directory / "fake-ffmpeg"
    log_path = directory / "ffmpeg-calls.log"
    script.write_text(
        FAKE_FFMPEG.format(
            python=sys.executable,
            log_path=str(log_path),
            write_output=write_output,
            extract_exit=extract_exit,
            duration_line=duration_line,
        )
    )
    script.chmod(0o755)
    return script, log_path


def logged_calls(log_path: Path) -> list[list[str]]:
    if not log_path.exists():
        return []
    return [line.split(" ") for line in log_path.read_text().splitlines()]

"""
Pytest configuration and fixtures for DocSeal Backend tests.
"""

from contextlib import ExitStack
import os
from pathlib import Path
import shutil
import tempfile

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["SANDBOX_DIR"] = tempfile.mkdtemp(prefix="docseal_test_sandbox_")
os.environ["DOCSEAL_ENV"] = "development"

from docseal_backend.configuration import load_settings
from docseal_backend.exceptions import ToolFailure
from docseal_backend.hashing import HashingService
from docseal_backend.main import create_app
from docseal_backend.path_guard import PathGuard
from docseal_backend.pipeline import DocumentPipeline
from docseal_backend.process_runner import ProcessRunner
from docseal_backend.registry import FileRegistry
from docseal_backend.tools import ToolCommands

ENCRYPTED_MARKER = b"%ENCRYPTED\n"

MINIMAL_PDF = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer
<< /Size 4 /Root 1 0 R >>
startxref
196
%%EOF"""


class FakeRunner(ProcessRunner):
    """
    Stands in for gs/exiftool/qpdf by rewriting files the way the tools would.

    - sanitize copies the input to the -sOutputFile target
    - metadata-write appends a comment line, and fails on encrypted input
    - encrypt writes a marker followed by the input bytes to the output path
    """

    def __init__(self, fail_on=()):
        super().__init__(timeout=5)
        self.calls = []
        self.fail_on = set(fail_on)
        self.hooks = {}

    async def run(self, invocation):
        self.calls.append(invocation)
        hook = self.hooks.get(invocation.tool)
        if hook is not None:
            await hook(invocation)
        if invocation.tool in self.fail_on:
            raise ToolFailure(invocation.tool, "exit status 1")

        args = list(invocation.args)
        if invocation.tool == "sanitize":
            output = next(arg for arg in args if arg.startswith("-sOutputFile="))
            Path(output.split("=", 1)[1]).write_bytes(Path(args[-1]).read_bytes())
        elif invocation.tool == "metadata-write":
            target = Path(args[-1])
            content = target.read_bytes()
            if content.startswith(ENCRYPTED_MARKER):
                raise ToolFailure(invocation.tool, "exit status 1: file is encrypted")
            target.write_bytes(content + b"\n%metadata " + " ".join(args[3:-1]).encode("utf-8"))
        elif invocation.tool == "encrypt":
            source, output = Path(args[-2]), Path(args[-1])
            output.write_bytes(ENCRYPTED_MARKER + source.read_bytes())

    def calls_for(self, tool):
        return [call for call in self.calls if call.tool == tool]


def make_settings(sandbox: Path, **sections):
    """Settings on a private sandbox; keyword arguments are nested override sections."""
    overrides = {"storage": {"sandbox_dir": str(sandbox)}}
    for key, value in sections.items():
        overrides[key] = value
    return load_settings(overrides=overrides, environ={})


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the import-time sandbox after all tests."""
    sandbox_dir = os.environ["SANDBOX_DIR"]
    yield {"sandbox": sandbox_dir}
    shutil.rmtree(sandbox_dir, ignore_errors=True)


@pytest.fixture
def sandbox(tmp_path):
    path = tmp_path / "sandbox"
    path.mkdir()
    return path


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_client(sandbox, runner):
    """Factory for a started TestClient with optional settings overrides."""
    with ExitStack() as stack:

        def _make(**sections):
            app = create_app(make_settings(sandbox, **sections), runner=runner)
            return stack.enter_context(TestClient(app))

        yield _make


@pytest.fixture
def client(make_client):
    """Create a test client for a fresh app on a private sandbox."""
    return make_client()


@pytest.fixture
def services(client):
    return client.app.state.services


@pytest.fixture
def pipeline(sandbox, runner):
    """A pipeline wired to the fake runner, for tests below the HTTP layer."""
    guard = PathGuard(sandbox)
    return DocumentPipeline(
        registry=FileRegistry(guard),
        guard=guard,
        runner=runner,
        hasher=HashingService(),
        commands=ToolCommands(),
        max_concurrent=2,
    )


@pytest.fixture
def sample_pdf_bytes():
    return MINIMAL_PDF


@pytest.fixture
def sample_pdf(tmp_path, sample_pdf_bytes):
    """Create a minimal valid PDF file for testing."""
    path = tmp_path / "sample.pdf"
    path.write_bytes(sample_pdf_bytes)
    return path


@pytest.fixture
def ten_kb_pdf():
    """A ~10 KB PDF: the minimal document padded with comment lines before the trailer."""
    body, trailer = MINIMAL_PDF.split(b"xref", 1)
    padding = b"".join(b"%" + b"x" * 98 + b"\n" for _ in range(95))
    return body + padding + b"xref" + trailer


@pytest.fixture
def upload(client, sample_pdf_bytes):
    """Upload helper returning the HTTP response."""

    def _upload(name="report.pdf", content=None, mime_type="application/pdf", author=None):
        data = {"author": author} if author is not None else {}
        return client.post(
            "/api/upload",
            files={"file": (name, content if content is not None else sample_pdf_bytes, mime_type)},
            data=data,
        )

    return _upload

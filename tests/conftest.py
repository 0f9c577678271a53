from pathlib import Path
import json
import os
import shutil
import tempfile
import uuid

import pytest
from PIL import Image
from pypdf import PdfWriter

from document_engine import DocumentEngine
from merge_models import KIND_IMAGE, ToolInvocationError, detect_kind
from merger_engine import JobRegistry, MergeOrchestrator

MIB = 1024 * 1024


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "merge_engine_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def read_pages(path) -> list:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def write_pages(path, pages) -> None:
    Path(path).write_text(json.dumps(list(pages)), encoding="utf-8")


class FakeDocumentEngine(DocumentEngine):
    """
    Stand-in engine where a document is a JSON list of page labels.
    Records every invocation so tests can assert on call counts and inputs.
    """

    name = "fake"

    def __init__(self, fail_merge_calls=(), on_merge=None):
        self.merge_calls = []
        self.extract_calls = []
        self.page_count_calls = []
        self.fail_merge_calls = set(fail_merge_calls)
        self.on_merge = on_merge

    def page_count(self, path, state=None):
        self.page_count_calls.append(str(path))
        return len(read_pages(path))

    def extract_range(self, source_path, start_page, end_page, out_path, state=None):
        self.extract_calls.append((str(source_path), start_page, end_page, str(out_path)))
        write_pages(out_path, read_pages(source_path)[start_page - 1:end_page])

    def merge(self, ordered_paths, out_path, state=None):
        call_no = len(self.merge_calls) + 1
        self.merge_calls.append(([str(p) for p in ordered_paths], str(out_path)))
        if self.on_merge is not None:
            self.on_merge(call_no, ordered_paths, out_path, state)
        if call_no in self.fail_merge_calls:
            Path(out_path).write_text("partial", encoding="utf-8")
            raise ToolInvocationError("simulated merge failure", command="fake", returncode=2)

        pages = []
        for path in ordered_paths:
            if not os.path.exists(path):
                raise ToolInvocationError(f"missing input {path}", command="fake", returncode=2)
            pages.extend(read_pages(path))
        write_pages(out_path, pages)


@pytest.fixture
def fake_engine():
    return FakeDocumentEngine()


@pytest.fixture
def make_doc(tmp_path: Path):
    """Create a fake paginated document and return its presentation-layer record."""
    source_dir = tmp_path / "sources"
    source_dir.mkdir(exist_ok=True)

    def _make(filename: str, pages: int = 1, size: int = None) -> dict:
        path = source_dir / filename
        stem = Path(filename).stem
        write_pages(path, [f"{stem}:{i}" for i in range(1, pages + 1)])
        return {
            "path": str(path),
            "name": filename,
            "size": size if size is not None else path.stat().st_size,
            "kind": detect_kind(filename),
        }

    return _make


@pytest.fixture
def make_orchestrator(tmp_path: Path, fake_engine):
    def _make(**overrides) -> MergeOrchestrator:
        options = {
            "engine": fake_engine,
            "temp_root": str(tmp_path / "work"),
            "logs_dir": str(tmp_path / "logs"),
            "memory_limit_bytes": 1024 * MIB,
            "registry": JobRegistry(),
        }
        options.update(overrides)
        return MergeOrchestrator(**options)

    return _make


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1) -> Path:
        path = tmp_path / filename
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=72, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        return path

    return _make


@pytest.fixture
def make_image(tmp_path: Path):
    def _make(filename: str, size=(40, 30), color=(200, 30, 30)) -> Path:
        path = tmp_path / filename
        Image.new("RGB", size, color).save(path)
        return path

    return _make


@pytest.fixture
def patch_office_converter(monkeypatch):
    """Replace the converter factory with a fake that writes JSON page lists."""

    def _patch(deck_pages: int = 2, fail_contains: str = "", cancel_contains: str = ""):
        created = []

        class FakeOfficeConverter:
            name = "fake-office"

            def __init__(self, preference, document_engine, require_office):
                self.preference = preference
                self.document_engine = document_engine
                self.require_office = require_office
                self.calls = []
                self.entered = False
                self.exited = False

            def __enter__(self):
                self.entered = True
                return self

            def __exit__(self, exc_type, exc, tb):
                self.exited = True
                return False

            def _pages_for(self, path):
                stem = Path(path).stem
                if fail_contains and fail_contains in str(path):
                    raise ToolInvocationError(f"cannot convert {path}", command="fake-office", returncode=1)
                if detect_kind(path) == KIND_IMAGE:
                    return [f"{stem}:image"]
                return [f"{stem}:slide{i}" for i in range(1, deck_pages + 1)]

            def _cancel_at(self, path, state):
                # Simulates the user pressing cancel while this source converts.
                if cancel_contains and cancel_contains in str(path) and state is not None:
                    state.request_cancel()
                    state.raise_if_cancelled()

            def legacy_deck_to_modern_deck(self, source_path, out_dir, state=None):
                self.calls.append(("legacy", str(source_path)))
                self._cancel_at(source_path, state)
                out_path = Path(out_dir) / f"{Path(source_path).stem}.pptx"
                write_pages(out_path, self._pages_for(source_path))
                return str(out_path)

            def image_to_single_page_document(self, source_path, out_path):
                self.calls.append(("image", str(source_path)))
                write_pages(out_path, self._pages_for(source_path))
                return str(out_path)

            def deck_batch_to_final_format(self, source_paths, output_format, out_path, state=None):
                self.calls.append(("batch", [str(p) for p in source_paths], output_format))
                pages = []
                for path in source_paths:
                    self._cancel_at(path, state)
                    if state is not None:
                        state.raise_if_cancelled()
                    pages.extend(self._pages_for(path))
                write_pages(out_path, pages)
                return str(out_path)

        def _factory(preference="auto", document_engine=None, require_office=True):
            converter = FakeOfficeConverter(preference, document_engine, require_office)
            created.append(converter)
            return converter

        monkeypatch.setattr("merger_engine.select_office_converter", _factory)
        return created

    return _patch

from pathlib import Path

import pytest

from conftest import read_pages, write_pages
from merge_models import ConversionError, EngineUnavailableError, ToolInvocationError, UnsupportedInputError
from office_converter import (
    PP_SAVE_AS_PDF,
    ImageConverter,
    LibreOfficeConverter,
    OfficeConverter,
    PowerPointConverter,
    select_office_converter,
)


def _source(tmp_path, filename):
    """Convertible sources only need to exist; the fake converter derives pages from the name."""
    path = tmp_path / "sources" / filename
    path.parent.mkdir(exist_ok=True)
    path.write_bytes(b"binary")
    return {"path": str(path), "name": filename, "size": path.stat().st_size}


def test_mixed_batch_converts_each_source_and_keeps_order(
    tmp_path, make_orchestrator, make_doc, patch_office_converter, fake_engine
):
    created = patch_office_converter(deck_pages=2)
    files = [make_doc("intro.pdf", pages=2), _source(tmp_path, "deck.pptx"), _source(tmp_path, "photo.png")]
    output = tmp_path / "merged.pdf"

    result = make_orchestrator(build_bookmarks=False).merge_files(files, str(output))

    assert result["route"] == "mixed"
    assert result["strategy"] == "conversion"
    assert read_pages(output) == ["intro:1", "intro:2", "deck:slide1", "deck:slide2", "photo:image"]
    converter = created[0]
    assert converter.require_office is True
    assert converter.entered and converter.exited
    assert [call[0] for call in converter.calls] == ["batch", "image"]
    assert len(fake_engine.merge_calls) == 1


def test_mixed_batch_cannot_target_a_deck(tmp_path, make_orchestrator, make_doc, patch_office_converter):
    patch_office_converter()

    with pytest.raises(UnsupportedInputError, match="can only be exported as PDF"):
        make_orchestrator().merge_files(
            [make_doc("a.pdf"), _source(tmp_path, "b.pptx")], str(tmp_path / "out.pptx"), "pptx"
        )


def test_deck_output_composes_all_sources_in_one_batch(tmp_path, make_orchestrator, patch_office_converter, fake_engine):
    created = patch_office_converter(deck_pages=2)
    files = [_source(tmp_path, "modern.pptx"), _source(tmp_path, "old.ppt"), _source(tmp_path, "chart.png")]
    output = tmp_path / "talk.pptx"
    events = []

    result = make_orchestrator().merge_files(files, str(output), "pptx", progress_callback=events.append)

    assert result["output_format"] == "pptx"
    assert [e.completed for e in events if e.label == "Presentation built"] == [3]
    assert result["route"] == "uniform-convertible"
    calls = created[0].calls
    assert calls[0] == ("legacy", files[1]["path"])
    kind, sources, output_format = calls[1]
    assert kind == "batch" and output_format == "pptx"
    assert sources[0] == files[0]["path"]
    assert Path(sources[1]).suffix == ".pptx"
    assert sources[2] == files[2]["path"]
    assert read_pages(output) == ["modern:slide1", "modern:slide2", "old:slide1", "old:slide2", "chart:image"]
    assert fake_engine.merge_calls == []


def test_decks_exported_as_pdf_are_converted_then_merged(
    tmp_path, make_orchestrator, patch_office_converter, fake_engine
):
    patch_office_converter(deck_pages=3)
    files = [_source(tmp_path, "one.pptx"), _source(tmp_path, "two.ppt")]
    output = tmp_path / "decks.pdf"

    result = make_orchestrator(build_bookmarks=False).merge_files(files, str(output), "pdf")

    assert read_pages(output) == [f"one:slide{i}" for i in range(1, 4)] + [f"two:slide{i}" for i in range(1, 4)]
    assert result["merge_calls"] == 1
    assert len(fake_engine.merge_calls[0][0]) == 2


def test_image_only_pdf_batch_needs_no_office_application(
    tmp_path, make_orchestrator, patch_office_converter, fake_engine
):
    created = patch_office_converter()
    files = [_source(tmp_path, "a.png"), _source(tmp_path, "b.jpg")]
    output = tmp_path / "images.pdf"
    events = []

    make_orchestrator(build_bookmarks=False).merge_files(files, str(output), "pdf", progress_callback=events.append)

    assert created[0].require_office is False
    converted = [e for e in events if e.phase == "merging" and e.completed == 2]
    assert converted and converted[0].percent == 95
    assert created[0].calls == [("batch", [files[0]["path"], files[1]["path"]], "pdf")]
    assert read_pages(output) == ["a:image", "b:image"]
    assert fake_engine.merge_calls == []


def test_document_batch_requesting_deck_is_written_as_pdf(tmp_path, make_orchestrator, make_doc):
    result = make_orchestrator().merge_files([make_doc("a.pdf")], str(tmp_path / "merged.pdf"), "pptx")

    assert result["output_format"] == "pdf"
    assert result["route"] == "uniform-documents"


def test_deck_extension_is_swapped_when_output_is_a_pdf(tmp_path, make_orchestrator, make_doc):
    requested = tmp_path / "merged.pptx"

    result = make_orchestrator().merge_files([make_doc("a.pdf"), make_doc("b.pdf")], str(requested), "pptx")

    assert result["output_path"] == str(tmp_path / "merged.pdf")
    assert read_pages(tmp_path / "merged.pdf") == ["a:1", "b:1"]
    assert not requested.exists()
    assert [w["code"] for w in result["warnings"]] == ["output_renamed"]


def test_conversion_failure_surfaces_and_cleans_up(tmp_path, make_orchestrator, make_doc, patch_office_converter):
    patch_office_converter(fail_contains="broken")
    output = tmp_path / "merged.pdf"
    orchestrator = make_orchestrator()

    with pytest.raises(ToolInvocationError, match="cannot convert"):
        orchestrator.merge_files([make_doc("a.pdf"), _source(tmp_path, "broken.pptx")], str(output))

    assert not output.exists()
    assert orchestrator.is_busy() is False
    assert list((tmp_path / "work").iterdir()) == []


def test_cancel_while_converting_a_mixed_batch(
    tmp_path, make_orchestrator, make_doc, patch_office_converter, fake_engine
):
    created = patch_office_converter(cancel_contains="cancel-here")
    files = [make_doc("a.pdf"), _source(tmp_path, "cancel-here.pptx"), make_doc("c.pdf")]
    output = tmp_path / "merged.pdf"
    orchestrator = make_orchestrator()
    events = []

    result = orchestrator.merge_files(files, str(output), progress_callback=events.append)

    assert result["canceled"] is True
    assert result["route"] == "mixed"
    assert not output.exists()
    assert list((tmp_path / "work").iterdir()) == []
    assert created[0].entered and created[0].exited
    assert fake_engine.merge_calls == []
    assert events[-1].phase == "canceled"
    assert orchestrator.is_busy() is False


def test_cancel_while_modernizing_legacy_decks(tmp_path, make_orchestrator, patch_office_converter):
    created = patch_office_converter(cancel_contains="cancel-here")
    files = [_source(tmp_path, "intro.pptx"), _source(tmp_path, "cancel-here.ppt"), _source(tmp_path, "photo.png")]
    output = tmp_path / "talk.pptx"
    orchestrator = make_orchestrator()

    result = orchestrator.merge_files(files, str(output), "pptx")

    assert result["canceled"] is True
    assert not output.exists()
    assert list((tmp_path / "work").iterdir()) == []
    assert created[0].exited
    assert [call[0] for call in created[0].calls] == ["legacy"]
    assert orchestrator.is_busy() is False


def test_missing_converter_fails_before_workspace_is_created(tmp_path, make_orchestrator, monkeypatch):
    def unavailable(preference="auto", document_engine=None, require_office=True):
        raise EngineUnavailableError("Slide deck conversion requires Microsoft PowerPoint (Windows) or LibreOffice.")

    monkeypatch.setattr("merger_engine.select_office_converter", unavailable)

    with pytest.raises(EngineUnavailableError):
        make_orchestrator().merge_files([_source(tmp_path, "deck.pptx")], str(tmp_path / "deck.pdf"))

    assert not (tmp_path / "work").exists()


def test_auto_selection_falls_back_to_pillow_for_images(monkeypatch):
    monkeypatch.setattr("office_converter.PowerPointConverter.is_available", staticmethod(lambda: (False, "no")))
    monkeypatch.setattr("office_converter.LibreOfficeConverter.is_available", staticmethod(lambda: (False, "no")))

    assert isinstance(select_office_converter("auto", require_office=False), ImageConverter)
    with pytest.raises(EngineUnavailableError):
        select_office_converter("auto", require_office=True)


def test_ready_converter_instances_are_used_as_is():
    converter = ImageConverter()

    assert select_office_converter(converter) is converter


def test_image_converter_paginates_images(tmp_path, make_image):
    from pypdf import PdfReader

    images = [make_image("a.png"), make_image("b.jpg", size=(20, 60))]
    out_path = tmp_path / "images.pdf"

    ImageConverter().deck_batch_to_final_format([str(p) for p in images], "pdf", str(out_path))

    assert len(PdfReader(str(out_path)).pages) == 2


def test_base_converter_rejects_decks(tmp_path):
    with pytest.raises(ConversionError, match="require Microsoft PowerPoint or LibreOffice"):
        OfficeConverter().deck_batch_to_final_format([str(tmp_path / "a.pptx")], "pdf", str(tmp_path / "o.pdf"))


def test_libreoffice_joins_converted_pieces_with_document_engine(tmp_path, fake_engine, monkeypatch):
    converter = LibreOfficeConverter(fake_engine, soffice_path="soffice")

    def fake_convert(source_path, target_ext, out_dir, state):
        out = Path(out_dir) / f"{Path(source_path).stem}.{target_ext}"
        write_pages(out, [f"{Path(source_path).stem}:slide1"])
        return str(out)

    monkeypatch.setattr(converter, "_convert", fake_convert)
    out_path = tmp_path / "decks.pdf"

    converter.deck_batch_to_final_format([str(tmp_path / "a.pptx"), str(tmp_path / "b.ppt")], "pdf", str(out_path))

    assert read_pages(out_path) == ["a:slide1", "b:slide1"]
    assert len(fake_engine.merge_calls) == 1


class FakePresentation:
    def __init__(self, app, path):
        self.app = app
        self.path = path

    def SaveAs(self, out_path, file_format):
        self.app.saved.append((Path(self.path).name, file_format))
        write_pages(out_path, [f"{Path(self.path).stem}:own-design"])

    def Close(self):
        self.app.closed += 1


class FakePresentations:
    def __init__(self, app):
        self.app = app

    def Open(self, path, read_only, untitled, with_window):
        return FakePresentation(self.app, path)

    def Add(self, with_window):
        self.app.added += 1
        raise RuntimeError("no blank presentations here")


class FakePowerPointApp:
    def __init__(self):
        self.saved = []
        self.closed = 0
        self.added = 0
        self.Presentations = FakePresentations(self)


def test_powerpoint_exports_each_deck_whole_then_joins(tmp_path, fake_engine):
    converter = PowerPointConverter(fake_engine)
    converter.app = FakePowerPointApp()
    out_path = tmp_path / "decks.pdf"

    converter.deck_batch_to_final_format([str(tmp_path / "a.pptx"), str(tmp_path / "b.ppt")], "pdf", str(out_path))

    assert read_pages(out_path) == ["a:own-design", "b:own-design"]
    assert converter.app.saved == [("a.pptx", PP_SAVE_AS_PDF), ("b.ppt", PP_SAVE_AS_PDF)]
    assert converter.app.closed == 2
    assert converter.app.added == 0
    assert len(fake_engine.merge_calls) == 1


def test_powerpoint_single_deck_pdf_needs_no_join(tmp_path, fake_engine):
    converter = PowerPointConverter(fake_engine)
    converter.app = FakePowerPointApp()
    out_path = tmp_path / "deck.pdf"

    result = converter.deck_batch_to_final_format([str(tmp_path / "talk.pptx")], "pdf", str(out_path))

    assert result == str(out_path)
    assert read_pages(out_path) == ["talk:own-design"]
    assert converter.app.added == 0
    assert fake_engine.merge_calls == []


def test_libreoffice_cannot_combine_several_sources_into_a_deck(tmp_path):
    converter = LibreOfficeConverter(soffice_path="soffice")

    with pytest.raises(ConversionError, match="requires Microsoft PowerPoint"):
        converter.deck_batch_to_final_format(
            [str(tmp_path / "a.pptx"), str(tmp_path / "b.pptx")], "pptx", str(tmp_path / "o.pptx")
        )

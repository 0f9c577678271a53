"""
Office conversion adapters
Turn slide decks and images into PDF pages, or compose them into one deck,
using Microsoft PowerPoint automation, headless LibreOffice or Pillow.
"""

import glob
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from document_engine import DocumentEngine, run_process
from merge_models import (
    DECK_KINDS,
    FORMAT_PDF,
    FORMAT_PPTX,
    KIND_DECK,
    KIND_IMAGE,
    ConversionError,
    EngineUnavailableError,
    JobState,
    detect_kind,
)

# Image handling
try:
    from PIL import Image
    HAS_PIL = True
except ImportError:
    HAS_PIL = False

# Microsoft PowerPoint automation (Windows)
try:
    import pythoncom
    import win32com.client as win32_client
    HAS_WIN32COM = True
except ImportError:
    HAS_WIN32COM = False

IMAGE_PDF_RESOLUTION = 150

# PowerPoint object model constants
PP_SAVE_AS_OPEN_XML_PRESENTATION = 24
PP_SAVE_AS_PDF = 32
PP_LAYOUT_BLANK = 12
PP_ALERTS_NONE = 1
MSO_TRUE = -1
MSO_FALSE = 0

_SOFFICE_CANDIDATES = (
    r"C:\Program Files\LibreOffice\program\soffice.exe",
    r"C:\Program Files (x86)\LibreOffice\program\soffice.exe",
    "/Applications/LibreOffice.app/Contents/MacOS/soffice",
)


def _check_cancel(state: Optional[JobState]) -> None:
    if state is not None:
        state.raise_if_cancelled()


def _as_pdf_page(img: "Image.Image") -> "Image.Image":
    # Convert to RGB so it can be saved as PDF (handles RGBA, P, etc.)
    if img.mode not in ('RGB', 'L'):
        return img.convert('RGB')
    return img.copy()


def image_to_single_page_document(source_path: str, out_path: str) -> str:
    """Render one image as a one-page PDF."""
    if not HAS_PIL:
        raise EngineUnavailableError("Pillow library is required for image conversion")
    try:
        with Image.open(source_path) as img:
            page = _as_pdf_page(img)
        try:
            page.save(out_path, format='PDF', resolution=IMAGE_PDF_RESOLUTION)
        finally:
            page.close()
    except (OSError, ValueError) as exc:
        raise ConversionError(
            f"Could not convert image {os.path.basename(source_path)} to PDF: {exc}",
            command="Pillow",
        ) from exc
    return out_path


def images_to_paginated_document(source_paths: Sequence[str], out_path: str,
                                 state: Optional[JobState] = None) -> str:
    """Write a PDF with one page per image, in order."""
    if not HAS_PIL:
        raise EngineUnavailableError("Pillow library is required for image conversion")
    if not source_paths:
        raise ConversionError("No images to convert.", command="Pillow")

    pages: List["Image.Image"] = []
    try:
        for path in source_paths:
            _check_cancel(state)
            try:
                with Image.open(path) as img:
                    pages.append(_as_pdf_page(img))
            except (OSError, ValueError) as exc:
                raise ConversionError(
                    f"Could not read image {os.path.basename(path)}: {exc}",
                    command="Pillow",
                ) from exc

        _check_cancel(state)
        first, rest = pages[0], pages[1:]
        try:
            first.save(out_path, format='PDF', resolution=IMAGE_PDF_RESOLUTION, save_all=True, append_images=rest)
        except (OSError, ValueError) as exc:
            raise ConversionError(f"Could not write image PDF: {exc}", command="Pillow") from exc
    finally:
        for page in pages:
            page.close()
    return out_path


class OfficeConverter:
    """Base adapter. Subclasses provide deck conversion and composition."""

    name = "office"

    def __init__(self, document_engine: Optional[DocumentEngine] = None):
        self.document_engine = document_engine

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        return False, "No office converter configured."

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def legacy_deck_to_modern_deck(self, source_path: str, out_dir: str,
                                   state: Optional[JobState] = None) -> str:
        raise ConversionError(
            f"{self.name} cannot convert legacy deck {os.path.basename(source_path)}.",
            command=self.name,
        )

    def image_to_single_page_document(self, source_path: str, out_path: str) -> str:
        return image_to_single_page_document(source_path, out_path)

    def deck_batch_to_final_format(self, source_paths: Sequence[str], output_format: str, out_path: str,
                                   state: Optional[JobState] = None) -> str:
        """Combine decks/images, in order, into one file of output_format."""
        _check_cancel(state)
        if output_format == FORMAT_PDF and source_paths and all(detect_kind(p) == KIND_IMAGE for p in source_paths):
            return images_to_paginated_document(source_paths, out_path, state)
        return self._compose(list(source_paths), output_format, out_path, state)

    def _deck_to_pdf(self, source_path: str, out_dir: str, state: Optional[JobState]) -> str:
        raise ConversionError(
            "Slide decks require Microsoft PowerPoint or LibreOffice to convert.",
            command=self.name,
        )

    def _compose(self, source_paths: List[str], output_format: str, out_path: str,
                 state: Optional[JobState]) -> str:
        if output_format == FORMAT_PDF:
            return self._export_pieces_as_pdf(source_paths, out_path, state)
        raise ConversionError(
            "Slide decks require Microsoft PowerPoint or LibreOffice to convert.",
            command=self.name,
        )

    def _export_pieces_as_pdf(self, source_paths: List[str], out_path: str,
                              state: Optional[JobState]) -> str:
        """Export every source to its own PDF, keeping each deck's design, then join them in order."""
        out_dir = os.path.dirname(os.path.abspath(out_path))
        pieces = []
        for index, path in enumerate(source_paths, 1):
            _check_cancel(state)
            kind = detect_kind(path)
            if kind == KIND_IMAGE:
                piece = os.path.join(out_dir, f"image-{uuid.uuid4().hex[:8]}-{index:04d}.pdf")
                pieces.append(image_to_single_page_document(path, piece))
            elif kind in DECK_KINDS:
                pieces.append(self._deck_to_pdf(path, out_dir, state))
            else:
                raise ConversionError(f"Cannot convert {os.path.basename(path)} to PDF.", command=self.name)

        _check_cancel(state)
        if len(pieces) == 1:
            shutil.move(pieces[0], out_path)
            return out_path
        if self.document_engine is None:
            raise EngineUnavailableError("A document engine is required to join converted PDFs.")
        self.document_engine.merge(pieces, out_path, state)
        return out_path


class ImageConverter(OfficeConverter):
    """Pillow only: handles image batches exported as PDF."""

    name = "pillow"

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        if not HAS_PIL:
            return False, "Pillow is required for image conversion."
        return True, ""


class PowerPointConverter(OfficeConverter):
    """Converts and composes decks using Microsoft PowerPoint COM automation."""

    name = "powerpoint"

    def __init__(self, document_engine: Optional[DocumentEngine] = None):
        super().__init__(document_engine)
        self.app = None
        self.com_initialized = False

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        if os.name != 'nt':
            return False, "PowerPoint conversion is supported on Windows only."
        if not HAS_WIN32COM:
            return False, "pywin32 is required for PowerPoint automation."
        return True, ""

    def __enter__(self):
        pythoncom.CoInitialize()
        self.com_initialized = True
        try:
            self.app = win32_client.DispatchEx("PowerPoint.Application")
            try:
                self.app.DisplayAlerts = PP_ALERTS_NONE
            except Exception:
                pass
            return self
        except Exception:
            # Ensure COM is uninitialized if initialization fails after CoInitialize.
            if self.app is not None:
                try:
                    self.app.Quit()
                except Exception:
                    pass
                finally:
                    self.app = None
            if self.com_initialized:
                pythoncom.CoUninitialize()
                self.com_initialized = False
            raise

    def __exit__(self, exc_type, exc, tb):
        if self.app is not None:
            try:
                self.app.Quit()
            except Exception:
                pass
            self.app = None
        if self.com_initialized:
            pythoncom.CoUninitialize()
            self.com_initialized = False
        return False

    def _require_session(self):
        if self.app is None:
            raise RuntimeError("PowerPoint automation session is not initialized.")
        return self.app

    def _open(self, path: str):
        # Open(FileName, ReadOnly, Untitled, WithWindow)
        return self._require_session().Presentations.Open(os.path.abspath(path), MSO_TRUE, MSO_FALSE, MSO_FALSE)

    def _save_as(self, source_path: str, out_dir: str, extension: str, file_format: int,
                 state: Optional[JobState]) -> str:
        """Open one deck and save it whole in another format, keeping its masters and slide size."""
        _check_cancel(state)
        stem = Path(source_path).stem
        out_path = os.path.abspath(os.path.join(out_dir, f"{stem}-{uuid.uuid4().hex[:8]}.{extension}"))
        presentation = None
        try:
            presentation = self._open(source_path)
            presentation.SaveAs(out_path, file_format)
        except Exception as exc:
            raise ConversionError(
                f"PowerPoint could not convert {os.path.basename(source_path)}: {exc}",
                command=self.name,
            ) from exc
        finally:
            if presentation is not None:
                try:
                    presentation.Close()
                except Exception:
                    pass
        if not os.path.exists(out_path):
            raise ConversionError(f"PowerPoint produced no output for {os.path.basename(source_path)}.", command=self.name)
        return out_path

    def legacy_deck_to_modern_deck(self, source_path: str, out_dir: str,
                                   state: Optional[JobState] = None) -> str:
        return self._save_as(source_path, out_dir, 'pptx', PP_SAVE_AS_OPEN_XML_PRESENTATION, state)

    def _deck_to_pdf(self, source_path: str, out_dir: str, state: Optional[JobState]) -> str:
        return self._save_as(source_path, out_dir, 'pdf', PP_SAVE_AS_PDF, state)

    def _add_picture_slide(self, presentation, image_path: str) -> None:
        slide = presentation.Slides.Add(presentation.Slides.Count + 1, PP_LAYOUT_BLANK)
        slide_width = float(presentation.PageSetup.SlideWidth)
        slide_height = float(presentation.PageSetup.SlideHeight)
        with Image.open(image_path) as img:
            width, height = img.size
        scale = min(slide_width / max(1, width), slide_height / max(1, height))
        picture_width = width * scale
        picture_height = height * scale
        # AddPicture(FileName, LinkToFile, SaveWithDocument, Left, Top, Width, Height)
        slide.Shapes.AddPicture(
            os.path.abspath(image_path),
            MSO_FALSE,
            MSO_TRUE,
            (slide_width - picture_width) / 2,
            (slide_height - picture_height) / 2,
            picture_width,
            picture_height,
        )

    def _compose(self, source_paths: List[str], output_format: str, out_path: str,
                 state: Optional[JobState]) -> str:
        if output_format == FORMAT_PDF:
            return self._export_pieces_as_pdf(source_paths, out_path, state)

        # Slides inserted into a new deck take its design; only a combined deck is built this way.
        app = self._require_session()
        out_abs = os.path.abspath(out_path)
        presentation = None
        try:
            presentation = app.Presentations.Add(MSO_FALSE)
            for path in source_paths:
                _check_cancel(state)
                kind = detect_kind(path)
                if kind in DECK_KINDS:
                    presentation.Slides.InsertFromFile(os.path.abspath(path), presentation.Slides.Count)
                elif kind == KIND_IMAGE:
                    self._add_picture_slide(presentation, path)
                else:
                    raise ConversionError(f"Cannot place {os.path.basename(path)} on a slide.", command=self.name)
            _check_cancel(state)
            presentation.SaveAs(out_abs, PP_SAVE_AS_OPEN_XML_PRESENTATION)
        except ConversionError:
            raise
        except Exception as exc:
            if state is not None and state.cancel_requested:
                raise
            raise ConversionError(f"PowerPoint could not build {os.path.basename(out_path)}: {exc}", command=self.name) from exc
        finally:
            if presentation is not None:
                try:
                    presentation.Close()
                except Exception:
                    pass
        if not os.path.exists(out_abs):
            raise ConversionError(f"PowerPoint produced no output for {os.path.basename(out_path)}.", command=self.name)
        return out_abs


def find_soffice() -> Optional[str]:
    for name in ("soffice", "libreoffice"):
        found = shutil.which(name)
        if found:
            return found
    for candidate in _SOFFICE_CANDIDATES:
        if os.path.isfile(candidate):
            return candidate
    return None


class LibreOfficeConverter(OfficeConverter):
    """Converts decks with headless LibreOffice; PDF batches are joined with the document engine."""

    name = "libreoffice"

    def __init__(self, document_engine: Optional[DocumentEngine] = None, soffice_path: Optional[str] = None):
        super().__init__(document_engine)
        self.soffice_path = soffice_path or find_soffice()

    @staticmethod
    def is_available() -> Tuple[bool, str]:
        if not find_soffice():
            return False, "LibreOffice 'soffice' command not available."
        return True, ""

    def _convert(self, source_path: str, target_ext: str, out_dir: str, state: Optional[JobState]) -> str:
        if not self.soffice_path:
            raise EngineUnavailableError("LibreOffice 'soffice' command not available.")
        _check_cancel(state)
        # A private output folder and profile per call: soffice names outputs after the source stem.
        call_dir = os.path.join(out_dir, f"lo-{uuid.uuid4().hex[:8]}")
        os.makedirs(call_dir, exist_ok=True)
        profile_uri = Path(os.path.join(call_dir, ".profile")).resolve().as_uri()
        run_process(
            self.soffice_path,
            [
                f"-env:UserInstallation={profile_uri}",
                '--headless',
                '--norestore',
                '--convert-to', target_ext,
                '--outdir', call_dir,
                os.path.abspath(source_path),
            ],
            state,
        )

        expected = os.path.join(call_dir, f"{Path(source_path).stem}.{target_ext}")
        if os.path.exists(expected):
            return expected
        # LibreOffice sometimes changes the case of the name; fall back to a search
        candidates = glob.glob(os.path.join(call_dir, f"*.{target_ext}"))
        if not candidates:
            raise ConversionError(
                f"LibreOffice conversion did not produce an output file for {os.path.basename(source_path)}",
                command=self.soffice_path,
            )
        return candidates[0]

    def legacy_deck_to_modern_deck(self, source_path: str, out_dir: str,
                                   state: Optional[JobState] = None) -> str:
        return self._convert(source_path, 'pptx', out_dir, state)

    def _deck_to_pdf(self, source_path: str, out_dir: str, state: Optional[JobState]) -> str:
        return self._convert(source_path, 'pdf', out_dir, state)

    def _compose(self, source_paths: List[str], output_format: str, out_path: str,
                 state: Optional[JobState]) -> str:
        out_dir = os.path.dirname(os.path.abspath(out_path))
        if output_format == FORMAT_PPTX:
            if len(source_paths) == 1 and detect_kind(source_paths[0]) in DECK_KINDS:
                source = source_paths[0]
                if detect_kind(source) != KIND_DECK:
                    source = self._convert(source, 'pptx', out_dir, state)
                shutil.copyfile(source, out_path)
                return out_path
            raise ConversionError(
                "Combining several slide decks or images into one deck requires Microsoft PowerPoint.",
                command=self.name,
            )

        return self._export_pieces_as_pdf(source_paths, out_path, state)


def select_office_converter(
    preference="auto",
    document_engine: Optional[DocumentEngine] = None,
    require_office: bool = True,
) -> OfficeConverter:
    """
    Pick a conversion adapter.

    Args:
        preference: "auto", "powerpoint", "libreoffice", or a ready OfficeConverter
        document_engine: used by adapters that join intermediate PDFs
        require_office: False when the batch only holds images exported as PDF

    Raises:
        EngineUnavailableError: when no adapter can handle the batch
    """
    if isinstance(preference, OfficeConverter):
        return preference

    if preference == "powerpoint":
        available, reason = PowerPointConverter.is_available()
        if not available:
            raise EngineUnavailableError(f"PowerPoint automation is not available. Details: {reason}")
        return PowerPointConverter(document_engine)

    if preference == "libreoffice":
        available, reason = LibreOfficeConverter.is_available()
        if not available:
            raise EngineUnavailableError(f"LibreOffice is not available. Details: {reason}")
        return LibreOfficeConverter(document_engine)

    if preference != "auto":
        raise EngineUnavailableError(f"Unknown office converter: {preference}")

    if PowerPointConverter.is_available()[0]:
        return PowerPointConverter(document_engine)
    if LibreOfficeConverter.is_available()[0]:
        return LibreOfficeConverter(document_engine)
    if not require_office and ImageConverter.is_available()[0]:
        return ImageConverter(document_engine)
    raise EngineUnavailableError(
        "Slide deck conversion requires Microsoft PowerPoint (Windows) or LibreOffice."
    )

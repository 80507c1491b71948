from __future__ import annotations

import zipfile

import fitz
import pytest
from pptx import Presentation

from upscaleclient.export import (
    NothingToExportError,
    export_pdf,
    export_pptx,
    export_single_image,
    export_zip,
    fit_contain,
)
from upscaleclient.pages import PageStatus, ProcessedPage


@pytest.fixture
def pages(png_factory):
    done = ProcessedPage(
        page_index=1,
        original_png=png_factory(60, 80),
        width=60,
        height=80,
        processed_image=png_factory(120, 160),
        status=PageStatus.COMPLETED,
    )
    failed = ProcessedPage(page_index=2, original_png=png_factory(60, 80), width=60, height=80, status=PageStatus.ERROR)
    done_too = ProcessedPage(
        page_index=3,
        original_png=png_factory(80, 60),
        width=80,
        height=60,
        processed_image=png_factory(160, 120),
        status=PageStatus.COMPLETED,
    )
    return [done, failed, done_too]


def test_pdf_contains_processed_pages_at_original_size(tmp_path, pages):
    path = export_pdf(pages, tmp_path)

    assert path.name == "upscaled_document.pdf"
    with fitz.open(path) as document:
        assert document.page_count == 2
        assert (document[0].rect.width, document[0].rect.height) == (60, 80)
        assert (document[1].rect.width, document[1].rect.height) == (80, 60)


def test_pptx_has_one_slide_per_page(tmp_path, pages):
    path = export_pptx(pages, tmp_path)

    assert path.name == "upscaled_presentation.pptx"
    presentation = Presentation(str(path))
    assert len(presentation.slides) == 3
    assert all(len(slide.shapes) == 1 for slide in presentation.slides)


def test_zip_names_processed_images(tmp_path, pages):
    path = export_zip(pages, tmp_path)

    assert path.name == "upscaled_images.zip"
    with zipfile.ZipFile(path) as archive:
        assert archive.namelist() == ["upscaled_images/image_001.png", "upscaled_images/image_003.png"]
        assert archive.read("upscaled_images/image_001.png") == pages[0].processed_image


def test_single_image(tmp_path, pages):
    path = export_single_image(pages[2], tmp_path)

    assert path.name == "page_3_fixed.png"
    assert path.read_bytes() == pages[2].processed_image
    with pytest.raises(NothingToExportError):
        export_single_image(pages[1], tmp_path)


def test_nothing_processed(tmp_path, pages):
    unprocessed = [pages[1]]

    with pytest.raises(NothingToExportError):
        export_pdf(unprocessed, tmp_path)
    with pytest.raises(NothingToExportError):
        export_zip(unprocessed, tmp_path)
    with pytest.raises(NothingToExportError):
        export_pptx([], tmp_path)


def test_fit_contain_centers_image():
    assert fit_contain(100, 100, 200, 100) == (50, 0, 100, 100)
    assert fit_contain(400, 100, 200, 100) == (0, 25, 200, 50)

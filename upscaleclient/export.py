from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path

import fitz  # PyMuPDF
from pptx import Presentation
from pptx.util import Inches

from .pages import ProcessedPage

logger = logging.getLogger("upscaler.export")

PDF_FILENAME = "upscaled_document.pdf"
PPTX_FILENAME = "upscaled_presentation.pptx"
ZIP_FILENAME = "upscaled_images.zip"
ZIP_FOLDER = "upscaled_images"
SLIDE_WIDTH = Inches(13.333)
SLIDE_HEIGHT = Inches(7.5)


class NothingToExportError(ValueError):
    pass


def completed_pages(pages: list[ProcessedPage]) -> list[ProcessedPage]:
    return [page for page in pages if page.processed_image]


def export_pdf(pages: list[ProcessedPage], out_dir: Path, filename: str = PDF_FILENAME) -> Path:
    """Write processed pages only, each sized to its original page dimensions."""
    done = completed_pages(pages)
    if not done:
        raise NothingToExportError("No processed pages to export")

    out_path = out_dir / filename
    with fitz.open() as document:
        for page in done:
            pdf_page = document.new_page(width=page.width, height=page.height)
            pdf_page.insert_image(pdf_page.rect, stream=page.processed_image)
        document.save(str(out_path), deflate=True)
    logger.info("Wrote %s pages to %s", len(done), out_path)
    return out_path


def fit_contain(image_width: int, image_height: int, box_width: int, box_height: int) -> tuple[int, int, int, int]:
    scale = min(box_width / image_width, box_height / image_height)
    width = int(image_width * scale)
    height = int(image_height * scale)
    return (box_width - width) // 2, (box_height - height) // 2, width, height


def export_pptx(pages: list[ProcessedPage], out_dir: Path, filename: str = PPTX_FILENAME) -> Path:
    """One slide per page, processed image when available, original otherwise."""
    if not pages:
        raise NothingToExportError("No pages to export")

    presentation = Presentation()
    presentation.slide_width = SLIDE_WIDTH
    presentation.slide_height = SLIDE_HEIGHT
    blank_layout = presentation.slide_layouts[6]

    for page in pages:
        slide = presentation.slides.add_slide(blank_layout)
        image = page.processed_image or page.original_png
        left, top, width, height = fit_contain(
            page.width,
            page.height,
            presentation.slide_width,
            presentation.slide_height,
        )
        slide.shapes.add_picture(io.BytesIO(image), left, top, width=width, height=height)

    out_path = out_dir / filename
    presentation.save(str(out_path))
    logger.info("Wrote %s slides to %s", len(pages), out_path)
    return out_path


def export_zip(pages: list[ProcessedPage], out_dir: Path, filename: str = ZIP_FILENAME) -> Path:
    done = completed_pages(pages)
    if not done:
        raise NothingToExportError("No processed pages to export")

    out_path = out_dir / filename
    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for page in done:
            archive.writestr(f"{ZIP_FOLDER}/image_{page.page_index:03d}.png", page.processed_image)
    logger.info("Wrote %s images to %s", len(done), out_path)
    return out_path


def export_single_image(page: ProcessedPage, out_dir: Path) -> Path:
    if not page.processed_image:
        raise NothingToExportError(f"Page {page.page_index} has no processed image")
    out_path = out_dir / f"page_{page.page_index}_fixed.png"
    out_path.write_bytes(page.processed_image)
    return out_path


EXPORTERS = {
    "pdf": export_pdf,
    "pptx": export_pptx,
    "zip": export_zip,
}

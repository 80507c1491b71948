from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import fitz  # PyMuPDF
from PIL import Image

logger = logging.getLogger("upscaler.pages")

PDF_RENDER_SCALE = 2.0
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tif", ".tiff"}


class PageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ProcessedPage:
    page_index: int
    original_png: bytes
    width: int
    height: int
    processed_image: bytes | None = None
    status: PageStatus = PageStatus.PENDING
    selected: bool = True
    resolution: str | None = None
    source_name: str | None = None

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


def is_pdf(path: Path) -> bool:
    return path.suffix.lower() == ".pdf"


def is_image(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_SUFFIXES


def load_pdf(path: Path, scale: float = PDF_RENDER_SCALE) -> list[ProcessedPage]:
    pages: list[ProcessedPage] = []
    matrix = fitz.Matrix(scale, scale)
    with fitz.open(path) as document:
        for number, page in enumerate(document, start=1):
            pixmap = page.get_pixmap(matrix=matrix, alpha=False)
            pages.append(
                ProcessedPage(
                    page_index=number,
                    original_png=pixmap.tobytes("png"),
                    width=pixmap.width,
                    height=pixmap.height,
                    source_name=path.name,
                )
            )
    logger.info("Rendered %s pages from %s", len(pages), path.name)
    return pages


def load_image(path: Path, page_index: int) -> ProcessedPage:
    with Image.open(path) as image:
        if image.mode not in {"RGB", "RGBA"}:
            image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
        with io.BytesIO() as buffer:
            image.save(buffer, format="PNG")
            png = buffer.getvalue()
        width, height = image.size
    return ProcessedPage(
        page_index=page_index,
        original_png=png,
        width=width,
        height=height,
        source_name=path.name,
    )


def load_images(paths: Iterable[Path], existing_count: int = 0) -> list[ProcessedPage]:
    """Load image files as pages numbered after the ones already loaded."""
    pages: list[ProcessedPage] = []
    for path in paths:
        if not is_image(path):
            logger.warning("Skipping non-image file %s", path)
            continue
        pages.append(load_image(path, existing_count + len(pages) + 1))
    return pages


def load_inputs(paths: list[Path]) -> list[ProcessedPage]:
    if len(paths) == 1 and is_pdf(paths[0]):
        return load_pdf(paths[0])

    pages: list[ProcessedPage] = []
    for path in paths:
        if is_pdf(path):
            for page in load_pdf(path):
                page.page_index = len(pages) + 1
                pages.append(page)
        else:
            pages.extend(load_images([path], existing_count=len(pages)))
    return pages

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Event
from typing import Callable

from proxyservice.models import QuotaStatus

from .auth import AuthMode
from .pages import PageStatus, ProcessedPage

logger = logging.getLogger("upscaler.processing")

SUPPORTED_RESOLUTIONS = ("2K", "4K")


@dataclass
class ProcessingSummary:
    completed: int = 0
    failed: int = 0
    stopped: bool = False
    show_completion: bool = False
    quota: QuotaStatus | None = None


class PageProcessor:
    """Runs selected pages through the auth strategy one at a time.

    ``stop()`` only prevents the next page from starting; a request already in
    flight runs to completion.
    """

    def __init__(
        self,
        auth: AuthMode,
        on_page_update: Callable[[ProcessedPage], None] | None = None,
        on_quota_update: Callable[[QuotaStatus], None] | None = None,
    ):
        self._auth = auth
        self._on_page_update = on_page_update
        self._on_quota_update = on_quota_update
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _notify(self, page: ProcessedPage) -> None:
        if self._on_page_update:
            self._on_page_update(page)

    def run(self, pages: list[ProcessedPage], resolution: str = "2K") -> ProcessingSummary:
        if resolution not in SUPPORTED_RESOLUTIONS:
            raise ValueError(f"Unsupported resolution: {resolution}")

        summary = ProcessingSummary()
        pending = [page for page in pages if page.selected and page.processed_image is None]
        if not pending:
            logger.info("No pages selected for processing")
            return summary

        self._stop_event.clear()
        for page in pending:
            if self._stop_event.is_set():
                summary.stopped = True
                break

            page.status = PageStatus.PROCESSING
            page.resolution = resolution
            self._notify(page)
            try:
                result = self._auth.process(page.original_png, page.width, page.height, resolution)
            except Exception as exc:
                logger.error("Page %s failed: %s", page.page_index, exc)
                page.status = PageStatus.ERROR
                summary.failed += 1
            else:
                page.processed_image = result.image
                page.status = PageStatus.COMPLETED
                summary.completed += 1
                if result.quota is not None:
                    summary.quota = result.quota
                    if self._on_quota_update:
                        self._on_quota_update(result.quota)
            self._notify(page)

        selected = [page for page in pages if page.selected]
        all_done = all(page.status in {PageStatus.COMPLETED, PageStatus.ERROR} for page in selected)
        has_success = any(page.status == PageStatus.COMPLETED for page in selected)
        summary.show_completion = has_success and (all_done or summary.stopped)
        return summary

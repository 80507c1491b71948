from __future__ import annotations

import io
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock
from typing import Any

from PIL import Image

logger = logging.getLogger("upscaler.archive")

RETENTION_SECONDS = 7 * 24 * 60 * 60
THUMBNAIL_MAX_DIM = 800
THUMBNAIL_QUALITY = 90
INDEX_FILENAME = "index.json"


@dataclass
class ArchivedImage:
    id: int
    created_at: float
    thumbnail_file: str
    blob_file: str
    width: int
    height: int
    size: int
    source_name: str | None = None


def make_thumbnail(source: bytes, max_dim: int = THUMBNAIL_MAX_DIM) -> bytes:
    with Image.open(io.BytesIO(source)) as image:
        thumb = image.convert("RGB")
        thumb.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
        with io.BytesIO() as buffer:
            thumb.save(buffer, format="JPEG", quality=THUMBNAIL_QUALITY)
            return buffer.getvalue()


class ArchiveStore:
    """Local copies of finished pages, kept for a limited time."""

    def __init__(self, root: Path):
        self._root = root
        self._index_path = root / INDEX_FILENAME
        self._lock = Lock()
        self._state = self._load_state()

    def _empty_state(self) -> dict[str, Any]:
        return {"version": 1, "next_id": 1, "images": []}

    def _load_state(self) -> dict[str, Any]:
        if not self._index_path.exists():
            return self._empty_state()
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load archive index '%s': %s", self._index_path, exc)
            return self._empty_state()

        images: list[dict[str, Any]] = []
        for entry in raw.get("images", []) if isinstance(raw, dict) else []:
            try:
                images.append(asdict(ArchivedImage(**entry)))
            except TypeError:
                continue
        next_id = max([entry["id"] for entry in images] + [0]) + 1
        return {"version": 1, "next_id": next_id, "images": images}

    def _persist_locked(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        tmp_path = self._index_path.with_suffix(self._index_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._state, ensure_ascii=True, separators=(",", ":")), encoding="utf-8")
        tmp_path.replace(self._index_path)

    def _remove_files(self, entry: dict[str, Any]) -> None:
        for name in (entry["thumbnail_file"], entry["blob_file"]):
            (self._root / name).unlink(missing_ok=True)

    def save(
        self,
        image: bytes,
        width: int,
        height: int,
        source_name: str | None = None,
        thumbnail_source: bytes | None = None,
        now_ts: float | None = None,
    ) -> int:
        # The original page is usually smaller and matches the preview.
        thumbnail = make_thumbnail(thumbnail_source or image)
        with self._lock:
            image_id = int(self._state["next_id"])
            entry = ArchivedImage(
                id=image_id,
                created_at=now_ts if now_ts is not None else time.time(),
                thumbnail_file=f"thumb_{image_id}.jpg",
                blob_file=f"image_{image_id}.bin",
                width=width,
                height=height,
                size=len(image),
                source_name=source_name,
            )
            self._root.mkdir(parents=True, exist_ok=True)
            (self._root / entry.thumbnail_file).write_bytes(thumbnail)
            (self._root / entry.blob_file).write_bytes(image)
            self._state["images"].append(asdict(entry))
            self._state["next_id"] = image_id + 1
            self._persist_locked()
        return image_id

    def prune(self, max_age_seconds: int = RETENTION_SECONDS, now_ts: float | None = None) -> int:
        cutoff = (now_ts if now_ts is not None else time.time()) - max_age_seconds
        with self._lock:
            kept: list[dict[str, Any]] = []
            removed = 0
            for entry in self._state["images"]:
                if float(entry["created_at"]) < cutoff:
                    self._remove_files(entry)
                    removed += 1
                else:
                    kept.append(entry)
            if removed:
                self._state["images"] = kept
                self._persist_locked()
                logger.info("Auto-pruned %s old images", removed)
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._state["images"])

    def list_images(self) -> list[ArchivedImage]:
        with self._lock:
            entries = [ArchivedImage(**entry) for entry in self._state["images"]]
        entries.sort(key=lambda item: item.created_at, reverse=True)
        return entries

    def read_image(self, image_id: int) -> bytes:
        for entry in self.list_images():
            if entry.id == image_id:
                return (self._root / entry.blob_file).read_bytes()
        raise KeyError(image_id)

    def delete(self, image_ids: list[int]) -> int:
        if not image_ids:
            return 0
        wanted = set(image_ids)
        with self._lock:
            kept = [entry for entry in self._state["images"] if entry["id"] not in wanted]
            removed = [entry for entry in self._state["images"] if entry["id"] in wanted]
            for entry in removed:
                self._remove_files(entry)
            self._state["images"] = kept
            self._persist_locked()
        return len(removed)

    def clear(self) -> None:
        with self._lock:
            for entry in self._state["images"]:
                self._remove_files(entry)
            self._state["images"] = []
            self._persist_locked()

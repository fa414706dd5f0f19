from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from .models import ObjectMetadata

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    def head_metadata(self, container: str, key: str) -> ObjectMetadata:
        ...

    def get_content(self, container: str, key: str) -> bytes:
        ...


@dataclass
class StoragePaths:
    root: Path

    def container_dir(self, container: str) -> Path:
        return self.root / container

    def object_path(self, container: str, key: str) -> Path:
        path = (self.container_dir(container) / key).resolve()
        if self.container_dir(container).resolve() not in path.parents:
            raise ValueError(f"Object key escapes its container: {key}")
        return path

    def metadata_path(self, container: str, key: str) -> Path:
        obj = self.object_path(container, key)
        return obj.with_name(f".{obj.name}.meta.json")


class LocalObjectStorage:
    """
    Filesystem-backed object storage. Objects live at `<root>/<container>/<key>`;
    the uploader tag is kept in a hidden JSON sidecar next to the object.
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def put_object(self, container: str, key: str, data: bytes, uploader: Optional[str] = None) -> Path:
        target = self.paths.object_path(container, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        meta_path = self.paths.metadata_path(container, key)
        if uploader:
            with meta_path.open("w", encoding="utf-8") as f:
                json.dump({"user": uploader}, f)
        elif meta_path.exists():
            meta_path.unlink()
        logger.info("Stored object %s/%s (%d bytes)", container, key, len(data))
        return target

    def head_metadata(self, container: str, key: str) -> ObjectMetadata:
        path = self.paths.object_path(container, key)
        stat = path.stat()
        uploader = None
        meta_path = self.paths.metadata_path(container, key)
        if meta_path.exists():
            with meta_path.open("r", encoding="utf-8") as f:
                uploader = json.load(f).get("user")
        return ObjectMetadata(
            size_bytes=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).replace(tzinfo=None),
            uploader_tag=uploader,
        )

    def get_content(self, container: str, key: str) -> bytes:
        return self.paths.object_path(container, key).read_bytes()

    def object_exists(self, container: str, key: str) -> bool:
        return self.paths.object_path(container, key).exists()

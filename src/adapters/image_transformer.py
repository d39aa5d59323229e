"""Image transformer adapter.

Converts HEIC/HEIF attachments from Messages into JPEG files the Twitter API
accepts. Everything else is uploaded as-is.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import tempfile
from pathlib import Path

from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from core.errors import NotFoundError, TransformError

LOGGER = logging.getLogger(__name__)

register_heif_opener()

NATIVE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
TRANSFORM_EXTENSIONS = frozenset({".heic", ".heif"})
TRANSFORM_KINDS = frozenset({"image/heic", "image/heif"})

JPEG_QUALITY = 90


class ImageTransformer:
    """Satisfies the MediaTransformerPort contract using Pillow."""

    def __init__(self, staging_dir: str | os.PathLike[str]) -> None:
        self._staging_dir = Path(staging_dir)
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Image staging directory: %s", self._staging_dir)

    def resolve(self, path: str) -> str:
        """Expand the ``~`` prefix Messages stores attachment paths with."""

        return os.path.expanduser(path)

    def needs_transform(self, path: str, media_kind: str = "") -> bool:
        ext = os.path.splitext(path)[1].lower()
        if ext in TRANSFORM_EXTENSIONS:
            return True
        if ext in NATIVE_EXTENSIONS:
            return False
        return media_kind.strip().lower() in TRANSFORM_KINDS

    def output_path(self, path: str) -> Path:
        """Deterministic staging location for a transformed ``path``.

        Messages reuses base names such as ``FullSizeRender.heic`` across
        attachment folders, so the name carries a digest of the full path.
        """

        source = os.path.abspath(path)
        stem = os.path.splitext(os.path.basename(source))[0]
        digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:8]
        return self._staging_dir / f"{stem}-{digest}.jpg"

    def transform(self, path: str) -> str:
        """Convert ``path`` to JPEG in the staging directory and return it."""

        source = self.resolve(path)
        try:
            with open(source, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise TransformError(path, f"Could not read {source}: {exc}") from exc

        target = self.output_path(source)
        # Each call writes its own temp file; concurrent transforms of the
        # same input race only on the final atomic replace.
        handle = tempfile.NamedTemporaryFile(
            dir=self._staging_dir,
            prefix=target.stem + ".",
            suffix=".tmp",
            delete=False,
        )
        tmp = Path(handle.name)
        try:
            with handle, Image.open(io.BytesIO(raw)) as image:
                image.convert("RGB").save(handle, format="JPEG", quality=JPEG_QUALITY)
            os.replace(tmp, target)
        except (UnidentifiedImageError, ValueError, OSError) as exc:
            tmp.unlink(missing_ok=True)
            raise TransformError(path, f"Image conversion failed for {source}: {exc}") from exc

        LOGGER.info("Converted %s -> %s (%s bytes)", os.path.basename(source), target, target.stat().st_size)
        return str(target)

    def prepare(self, path: str, media_kind: str = "") -> str:
        """Return an upload-ready local path for an attachment."""

        resolved = self.resolve(path)
        if not os.path.exists(resolved):
            raise NotFoundError(resolved)
        if self.needs_transform(resolved, media_kind):
            return self.transform(resolved)
        return resolved

"""Image handling for uploaded documents.

Uploads are identified by content, not by extension: Pillow decodes the
bytes and reports the real format. Stored documents carry their image as a
self-contained data URL so the library never points at files that may move.

Pending uploads get a *preview*: a downscaled JPEG thumbnail written to a
temp file for display. A preview is a transient resource and must be released
exactly once by whoever retires the pending upload.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import tempfile
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)


# =============================================================================
# Exceptions
# =============================================================================


class UnsupportedFileError(ValueError):
    """The selected file is not an image we can analyze."""


class PreviewReleasedError(RuntimeError):
    """A preview handle was released twice."""


# =============================================================================
# Encoding
# =============================================================================


def detect_mime_type(data: bytes) -> str:
    """Return the MIME type of an image by decoding its header.

    Raises:
        UnsupportedFileError: If the data is empty or not a decodable image.
    """
    if not data:
        raise UnsupportedFileError("File is empty")

    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise UnsupportedFileError(f"Not a supported image: {type(e).__name__}") from e

    mime = Image.MIME.get(image_format or "")
    if not mime or not mime.startswith("image/"):
        raise UnsupportedFileError(f"Unsupported image format: {image_format}")
    return mime


def to_data_url(data: bytes, mime_type: str) -> str:
    """Encode image bytes as a ``data:`` URL."""
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def parse_data_url(url: str) -> tuple[bytes, str]:
    """Decode a ``data:<mime>;base64,<payload>`` URL.

    Returns:
        Tuple of (image bytes, mime type).

    Raises:
        ValueError: If the URL is not a base64 data URL.
    """
    match = _DATA_URL_PATTERN.match(url)
    if match is None:
        raise ValueError("Not a base64 data URL")
    try:
        payload = base64.b64decode(match.group("payload"), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return payload, match.group("mime")


# =============================================================================
# Previews
# =============================================================================


class PreviewHandle:
    """Temp-file thumbnail for a pending upload.

    Attributes:
        path: Location of the thumbnail while the handle is live.
        released: Whether ``release()`` has been called.
    """

    def __init__(self, path: Path, factory: "PreviewFactory | None" = None) -> None:
        self.path = path
        self.released = False
        self._factory = factory

    def release(self) -> None:
        """Delete the thumbnail.

        Raises:
            PreviewReleasedError: If the handle was already released.
        """
        if self.released:
            raise PreviewReleasedError(f"Preview already released: {self.path.name}")
        self.released = True
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove preview file: {type(e).__name__}")
        if self._factory is not None:
            self._factory._on_release(self)

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"PreviewHandle({self.path.name}, {state})"


class PreviewFactory:
    """Creates preview handles and keeps count of the ones still live.

    Attributes:
        max_dim: Longest edge of generated thumbnails, in pixels.
        created: Number of handles created so far.
        released: Number of handles released so far.
    """

    def __init__(self, max_dim: int = 512, directory: Path | None = None) -> None:
        self.max_dim = max_dim
        self.directory = directory
        self.created = 0
        self.released = 0

    @property
    def outstanding(self) -> int:
        """Handles created but not yet released."""
        return self.created - self.released

    def create(self, data: bytes) -> PreviewHandle:
        """Write a JPEG thumbnail of ``data`` to a temp file.

        Raises:
            UnsupportedFileError: If the image cannot be decoded.
        """
        try:
            with Image.open(BytesIO(data)) as img:
                if img.mode != "RGB":
                    img = img.convert("RGB")
                img.thumbnail((self.max_dim, self.max_dim))
                buffer = BytesIO()
                img.save(buffer, format="JPEG", quality=80)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise UnsupportedFileError(f"Cannot render preview: {type(e).__name__}") from e

        fd, temp_path = tempfile.mkstemp(
            dir=self.directory,
            suffix=".jpg",
            prefix="civicease_preview_",
        )
        with os.fdopen(fd, "wb") as f:
            f.write(buffer.getvalue())

        self.created += 1
        handle = PreviewHandle(Path(temp_path), factory=self)
        logger.debug(f"Created preview {handle.path.name}")
        return handle

    def _on_release(self, handle: PreviewHandle) -> None:
        self.released += 1
        logger.debug(f"Released preview {handle.path.name}")

"""Card image renderers and connection icon providers.

Credential schemas may carry ``card_front`` / ``card_back`` attributes holding
a rendered picture of the credential. Connection and credential offers may
carry an icon shown in the holder's wallet. Both are plugged in from
configuration:

    CARD_IMAGE_RENDERING=none|static
    CONNECTION_IMAGE_PROVIDER=none|static

Images travel as ``data:<mime>;base64,<data>`` strings.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger("ssi_demo.branding")

MIMETYPES: dict[str, str] = {
    "bmp": "image/bmp",
    "gif": "image/gif",
    "ico": "image/x-icon",
    "jpe": "image/jpeg",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "svg": "image/svg+xml",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}


class CardRenderer(Protocol):
    async def create_card_front(self, personal_info: dict[str, Any]) -> str: ...

    async def create_card_back(self, personal_info: dict[str, Any]) -> str: ...


class ImageProvider(Protocol):
    async def get_image(self) -> str | None: ...


def _check_image_path(image_path: str) -> Path:
    path = Path(image_path)
    ext = path.suffix.lower().lstrip(".")
    if ext not in MIMETYPES:
        raise ValueError(f"File {image_path} is not an image! Must be one of {sorted(MIMETYPES)}")
    if not path.exists():
        raise ValueError(f"File {image_path} does not exist")
    return path


async def read_image_data_uri(path: Path) -> str:
    data = await asyncio.to_thread(path.read_bytes)
    mime = MIMETYPES[path.suffix.lower().lstrip(".")]
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class NullCardRenderer:
    """Renders every card side as an empty string."""

    async def create_card_front(self, personal_info: dict[str, Any]) -> str:
        return ""

    async def create_card_back(self, personal_info: dict[str, Any]) -> str:
        return ""


class StaticCardRenderer:
    """Returns the same placeholder images for every user."""

    def __init__(self, front_image: str, back_image: str) -> None:
        self.front_image = _check_image_path(front_image)
        self.back_image = _check_image_path(back_image)

    async def create_card_front(self, personal_info: dict[str, Any]) -> str:
        return await read_image_data_uri(self.front_image)

    async def create_card_back(self, personal_info: dict[str, Any]) -> str:
        return await read_image_data_uri(self.back_image)


class NullImageProvider:
    async def get_image(self) -> str | None:
        return None


class StaticImageProvider:
    """Serves one icon file, read once and cached."""

    def __init__(self, image_path: str) -> None:
        self.image_path = _check_image_path(image_path)
        self._cached: str | None = None

    async def get_image(self) -> str | None:
        if self._cached is None:
            logger.info("Loading connection icon %s", self.image_path)
            self._cached = await read_image_data_uri(self.image_path)
        return self._cached

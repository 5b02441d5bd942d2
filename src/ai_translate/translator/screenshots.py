"""Screenshot lookup for grouped requests."""

import base64
import re
from pathlib import Path
from typing import NamedTuple, Optional, Protocol

import structlog

logger = structlog.get_logger()

SCREENSHOT_PATTERN = re.compile(
    r"\[screenshot:\s*([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})\s*\]"
)

CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def extract_screenshot_uuid(comment: Optional[str]) -> Optional[str]:
    """Return the screenshot UUID referenced in a source comment, if any."""
    if not comment:
        return None
    match = SCREENSHOT_PATTERN.search(comment)
    return match.group(1).lower() if match else None


class ImageBytes(NamedTuple):
    content_type: str
    content: bytes

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


class ScreenshotProvider(Protocol):
    def get_image_bytes(self, screenshot_uuid: str) -> Optional[ImageBytes]:
        ...


class NoScreenshotProvider:
    """Provider used when no screenshot store is configured."""

    def get_image_bytes(self, screenshot_uuid: str) -> Optional[ImageBytes]:
        return None


class DirectoryScreenshotProvider:
    """Screenshots stored as ``<screenshot_dir>/<uuid>.<ext>``."""

    def __init__(self, screenshot_dir: Path):
        self.screenshot_dir = Path(screenshot_dir)

    def get_image_bytes(self, screenshot_uuid: str) -> Optional[ImageBytes]:
        for suffix, content_type in CONTENT_TYPES.items():
            path = self.screenshot_dir / f"{screenshot_uuid}{suffix}"
            if path.exists():
                return ImageBytes(content_type, path.read_bytes())
        logger.debug("screenshot_not_found", screenshot_uuid=screenshot_uuid)
        return None

"""Shared fixtures: synthetic photos and a scripted inference client."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from photo_renamer.config import RenamerConfig


def make_jpeg(
    path: Path,
    *,
    taken: str | None = None,
    size: tuple[int, int] = (16, 12),
) -> Path:
    """Write a small JPEG, optionally with EXIF DateTimeOriginal and a camera make."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", size, color=(200, 120, 40))
    if taken is None:
        img.save(path, format="JPEG")
        return path
    exif = Image.Exif()
    exif[0x010F] = "TestCam"  # Make
    exif[0x9003] = taken  # DateTimeOriginal
    img.save(path, format="JPEG", exif=exif)
    return path


@dataclass
class RecordedCall:
    model: str
    prompt: str
    additional_payload: dict[str, Any] | None


class ScriptedClient:
    """Stand-in for InferenceClient returning canned results (or raising canned errors)."""

    def __init__(self, results: list[Any]) -> None:
        self._results = list(results)
        self.calls: list[RecordedCall] = []

    def invoke(
        self,
        model: str,
        prompt: str,
        additional_payload: dict[str, Any] | None = None,
    ) -> Any:
        self.calls.append(RecordedCall(model, prompt, additional_payload))
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config(tmp_path: Path) -> RenamerConfig:
    """Configuration rooted in tmp_path with ExifTool rewriting disabled."""
    return RenamerConfig(
        working_directory=tmp_path,
        preserve_metadata=False,
        folder_date_fallback=False,
    )


@pytest.fixture
def make_photo() -> Any:
    """Factory writing synthetic JPEGs (see ``make_jpeg``)."""
    return make_jpeg


@pytest.fixture
def scripted_client() -> type[ScriptedClient]:
    """Factory for ScriptedClient instances."""
    return ScriptedClient

"""Tests for the per-file pipeline, with a scripted client in place of the inference server."""

import base64
import hashlib
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

import photo_renamer.metadata as md
import photo_renamer.processor as processor_module
from photo_renamer.config import RenamerConfig
from photo_renamer.errors import InvalidFilenameError, RetriesExhaustedError
from photo_renamer.processor import (
    FileTask,
    PhotoProcessor,
    ProcessStatus,
    check_filename,
    ensure_extension,
    fit_length,
    reserve_path,
)

KEYWORDS = {"keywords": ["beach", "sunset", "ocean"]}


@pytest.fixture(autouse=True)
def no_creation_time(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep capture times deterministic across filesystems."""
    monkeypatch.setattr(md, "file_creation_time", lambda _path: None)


def _task(path: Path) -> FileTask:
    return FileTask(source_path=path, sequence_index=1, total_count=1)


def _digest(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def test_full_pipeline_renames_and_archives(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """Copy lands in renamed/ with a date prefix; the untouched original moves to original/."""
    photo = make_photo(config.working_directory / "IMG_0001.jpg", taken="2020:05:01 10:00:00")
    checksum = _digest(photo)
    client = scripted_client([KEYWORDS, {"filename": "beach_sunset.jpg"}])
    processor = PhotoProcessor(config.with_overrides(add_date_prefix=True), client)

    outcome = processor.process(_task(photo))

    renamed = config.working_directory / "renamed" / "2020-05-01_10-00-00_beach_sunset.jpg"
    archived = config.working_directory / "original" / "IMG_0001.jpg"
    assert outcome.status is ProcessStatus.SUCCESS
    assert outcome.error is None
    assert outcome.renamed_path == renamed
    assert outcome.archived_path == archived
    assert not photo.exists()
    assert _digest(renamed) == checksum
    assert _digest(archived) == checksum
    taken = datetime(2020, 5, 1, 10, 0, 0)  # noqa: DTZ001
    assert renamed.stat().st_mtime == pytest.approx(taken.timestamp())


def test_model_calls_carry_image_and_keywords(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """Vision call gets the base64 image and EXIF triples; the text call gets the keywords."""
    photo = make_photo(config.working_directory / "IMG_0002.jpg", taken="2020:05:01 10:00:00")
    expected_b64 = base64.b64encode(photo.read_bytes()).decode("ascii")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])

    PhotoProcessor(config, client).process(_task(photo))

    vision, text = client.calls
    assert vision.model == config.vision_model
    assert vision.additional_payload == {"images": [expected_b64]}
    assert "TestCam" in vision.prompt
    assert text.model == config.text_model
    assert text.additional_payload is None
    assert "beach, sunset, ocean" in text.prompt
    assert "IMG_0002.jpg" in text.prompt
    assert "'.jpg'" in text.prompt


def test_no_date_prefix_without_capture_time(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """A photo with no known capture time keeps the generated name as is."""
    photo = make_photo(config.working_directory / "IMG_0003.jpg")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])
    processor = PhotoProcessor(config.with_overrides(add_date_prefix=True), client)

    outcome = processor.process(_task(photo))

    assert outcome.renamed_path == config.working_directory / "renamed" / "beach.jpg"


def test_missing_extension_is_restored(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """Model answers without an extension get the source extension appended."""
    photo = make_photo(config.working_directory / "IMG_0004.jpg")
    client = scripted_client([KEYWORDS, {"filename": "beach_sunset"}])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.SUCCESS
    assert outcome.renamed_path is not None
    assert outcome.renamed_path.name == "beach_sunset.jpg"


def test_name_collision_gets_numeric_suffix(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """An existing file in renamed/ is never overwritten."""
    root = config.working_directory
    existing = root / "renamed" / "beach.jpg"
    existing.parent.mkdir()
    existing.write_bytes(b"keep me")
    photo = make_photo(root / "IMG_0005.jpg")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.renamed_path == root / "renamed" / "beach_1.jpg"
    assert existing.read_bytes() == b"keep me"


def test_failed_archive_rolls_back_copy(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """If the original cannot be moved the renamed copy is deleted and the source stays put."""
    photo = make_photo(config.working_directory / "IMG_0006.jpg")
    checksum = _digest(photo)
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])

    def refuse_move(*_args: object) -> None:
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(processor_module.shutil, "move", refuse_move)

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "disk full" in outcome.error
    assert _digest(photo) == checksum
    assert list((config.working_directory / "renamed").iterdir()) == []
    assert list((config.working_directory / "original").iterdir()) == []


def test_reserved_characters_rejected_before_any_copy(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """A generated name with reserved characters fails the file without touching the disk."""
    photo = make_photo(config.working_directory / "IMG_0007.jpg")
    client = scripted_client([KEYWORDS, {"filename": "beach:sunset?.jpg"}])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "reserved characters" in outcome.error
    assert photo.exists()
    assert not (config.working_directory / "renamed").exists()
    assert not (config.working_directory / "original").exists()


@pytest.mark.parametrize("analysis", [{"keywords": []}, {"keywords": ["  ", ""]}, {}, ["beach"]])
def test_no_keywords_skips_filename_generation(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    analysis: Any,
) -> None:
    """Without keywords the text model is never asked."""
    photo = make_photo(config.working_directory / "IMG_0008.jpg")
    client = scripted_client([analysis])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert len(client.calls) == 1
    assert photo.exists()


@pytest.mark.parametrize("answer", [{"filename": ""}, {"filename": ".jpg"}, {"name": "x.jpg"}])
def test_empty_filename_fails(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    answer: dict[str, str],
) -> None:
    """An empty or missing filename is a terminal failure for the file."""
    photo = make_photo(config.working_directory / "IMG_0009.jpg")
    client = scripted_client([KEYWORDS, answer])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "empty name" in outcome.error
    assert photo.exists()


def test_corrupt_image_fails_without_inference(
    config: RenamerConfig,
    scripted_client: Any,
) -> None:
    """Structurally invalid images never reach the server."""
    photo = config.working_directory / "broken.jpg"
    photo.write_bytes(b"\xff\xd8 this is not really a jpeg")
    client = scripted_client([])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "Cannot decode image" in outcome.error
    assert client.calls == []


def test_oversized_payload_fails_without_inference(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """An encoded image above the payload ceiling fails before any call."""
    photo = make_photo(config.working_directory / "IMG_0010.jpg")
    client = scripted_client([])
    processor = PhotoProcessor(config.with_overrides(max_payload_mb=0.0001), client)

    outcome = processor.process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "exceeds" in outcome.error
    assert client.calls == []


def test_vanished_file_is_skipped(config: RenamerConfig, scripted_client: Any) -> None:
    """A file removed after enumeration is skipped, not failed."""
    client = scripted_client([])

    outcome = PhotoProcessor(config, client).process(
        _task(config.working_directory / "gone.jpg"),
    )

    assert outcome.status is ProcessStatus.SKIPPED
    assert outcome.error == "File no longer exists"
    assert client.calls == []


def test_inference_failure_leaves_file_in_place(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
) -> None:
    """Exhausted retries fail the file and leave the source untouched."""
    photo = make_photo(config.working_directory / "IMG_0011.jpg")
    client = scripted_client([RetriesExhaustedError(5, TimeoutError("slow"))])

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert outcome.error is not None
    assert "after 5 attempts" in outcome.error
    assert photo.exists()
    assert not (config.working_directory / "renamed").exists()


def test_preserve_metadata_rewrites_capture_time(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """With preservation on, the renamed copy gets the EXIF capture time written back."""
    written: list[tuple[Path, datetime]] = []
    monkeypatch.setattr(
        processor_module,
        "write_capture_time",
        lambda path, taken: written.append((path, taken)),
    )
    photo = make_photo(config.working_directory / "IMG_0012.jpg", taken="2020:05:01 10:00:00")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])
    processor = PhotoProcessor(config.with_overrides(preserve_metadata=True), client)

    outcome = processor.process(_task(photo))

    assert outcome.status is ProcessStatus.SUCCESS
    assert written == [(outcome.renamed_path, datetime(2020, 5, 1, 10, 0, 0))]  # noqa: DTZ001


def test_metadata_rewrite_failure_is_not_fatal(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing or failing ExifTool only costs the date rewrite, not the rename."""

    def exiftool_missing(*_args: object) -> None:
        msg = "exiftool not found"
        raise FileNotFoundError(msg)

    monkeypatch.setattr(processor_module, "write_capture_time", exiftool_missing)
    photo = make_photo(config.working_directory / "IMG_0013.jpg", taken="2020:05:01 10:00:00")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])
    processor = PhotoProcessor(config.with_overrides(preserve_metadata=True), client)

    outcome = processor.process(_task(photo))

    assert outcome.status is ProcessStatus.SUCCESS
    assert outcome.archived_path is not None
    assert outcome.archived_path.exists()


def test_fit_length_keeps_extension() -> None:
    """Long names are trimmed in the stem only."""
    trimmed = fit_length(f"{'word_' * 30}end.jpg", 40)

    assert len(trimmed) <= 40
    assert trimmed.endswith(".jpg")
    assert fit_length("short.jpg", 40) == "short.jpg"


def test_ensure_extension_is_case_insensitive() -> None:
    """Extensions already present in another case are left alone."""
    assert ensure_extension("beach.JPG", ".jpg") == "beach.JPG"
    assert ensure_extension("beach", ".png") == "beach.png"


@pytest.mark.parametrize("name", ["a<b.jpg", "a|b.jpg", "tab\there.jpg", "..", "  "])
def test_check_filename_rejects(name: str) -> None:
    """Reserved, control-only and empty names are refused."""
    with pytest.raises(InvalidFilenameError):
        check_filename(name)


def test_reserve_path_counts_up(tmp_path: Path) -> None:
    """The first free numeric suffix is chosen and claimed on disk."""
    (tmp_path / "beach.jpg").write_bytes(b"taken")
    (tmp_path / "beach_1.jpg").write_bytes(b"taken")

    assert reserve_path(tmp_path / "beach.jpg") == tmp_path / "beach_2.jpg"
    assert (tmp_path / "beach_2.jpg").read_bytes() == b""
    assert reserve_path(tmp_path / "forest.jpg") == tmp_path / "forest.jpg"


def test_reserve_path_never_hands_out_a_name_twice(tmp_path: Path) -> None:
    """Each call claims a different file even when nothing is written into it yet."""
    first = reserve_path(tmp_path / "beach.jpg")
    second = reserve_path(tmp_path / "beach.jpg")

    assert first == tmp_path / "beach.jpg"
    assert second == tmp_path / "beach_1.jpg"


def test_rollback_releases_archive_slot(
    config: RenamerConfig,
    make_photo: Any,
    scripted_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed copy leaves neither a renamed file nor an archive placeholder behind."""
    photo = make_photo(config.working_directory / "IMG_0014.jpg")
    client = scripted_client([KEYWORDS, {"filename": "beach.jpg"}])

    def refuse_copy(*_args: object) -> None:
        msg = "read-only filesystem"
        raise OSError(msg)

    monkeypatch.setattr(processor_module.shutil, "copy2", refuse_copy)

    outcome = PhotoProcessor(config, client).process(_task(photo))

    assert outcome.status is ProcessStatus.FAILED
    assert photo.exists()
    assert list((config.working_directory / "renamed").iterdir()) == []
    assert list((config.working_directory / "original").iterdir()) == []

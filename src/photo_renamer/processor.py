"""
Per-file pipeline: validate, analyze, name, then copy to ``renamed/`` and archive the original.

The copy into ``renamed/`` is the recoverable checkpoint and the move into ``original/`` is the
point of no return. Anything failing in between removes the copy again so a file is either
fully processed or left where it was.
"""

import base64
import json
import shutil
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from itertools import chain
from pathlib import Path
from typing import Any

import rawpy
from loguru import logger
from PIL import Image, ImageMode
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from .config import ORIGINAL_FOLDER, RENAMED_FOLDER, RenamerConfig
from .errors import (
    FilenameGenerationError,
    InvalidFilenameError,
    InvalidImageError,
    NoKeywordsError,
    PayloadTooLargeError,
    RenamerError,
)
from .inference import InferenceClient
from .metadata import (
    NON_RAW_EXTENSIONS,
    CaptureTimeResolver,
    ImageMetadata,
    exif_datetime_original,
    metadata_as_triples,
    read_image_metadata,
    stamp_file_times,
    write_capture_time,
)

log = logger.bind(component="processor")

DATE_PREFIX_FORMAT = "%Y-%m-%d_%H-%M-%S_"
RESERVED_FILENAME_CHARS = frozenset('<>:"/\\|?*')
FIRST_PRINTABLE = 0x20
MAX_UNIQUE_SUFFIX = 1000

# Prompt templates
ANALYSIS_PROMPT = (
    "You are a photo archivist. Analyze the attached image and list keywords that describe "
    "its visual content: main subjects, objects, setting, activity, colors and mood.\n"
    "Return 5 to 15 short lowercase keywords, most important first.\n"
    'Respond with JSON only, exactly in the form {"keywords": ["keyword", "..."]}.'
)
ANALYSIS_METADATA_SECTION = (
    "Embedded EXIF metadata (tag id, value, type) that may add context such as camera, "
    "date or location:\n{triples}"
)
FILENAME_PROMPT = (
    "Create a descriptive filename for a photo.\n"
    "Original filename: {original_name}\n"
    "Keywords describing the image: {keywords}\n"
    "Embedded metadata available: {has_metadata}\n"
    "Rules:\n"
    "- At most {max_length} characters including the extension.\n"
    "- Keep the original extension '{extension}'.\n"
    "- Use lowercase words separated by underscores; no spaces.\n"
    "- Do not use any of these characters: < > : \" / \\ | ? *\n"
    "- Make it specific enough to be unique among similar photos; do not add a date.\n"
    'Respond with JSON only, exactly in the form {{"filename": "name{extension}"}}.'
)


class ImageAnalysis(BaseModel):
    """Schema of the vision model output."""

    keywords: list[str] = Field(default_factory=list)


class GeneratedFilename(BaseModel):
    """Schema of the text model output."""

    filename: str = ""


class ProcessStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FileTask:
    source_path: Path
    sequence_index: int
    total_count: int

    @property
    def progress(self) -> str:
        return f"{self.sequence_index}/{self.total_count}"


@dataclass(frozen=True)
class RenamePlan:
    renamed_destination: Path
    original_archive: Path
    generated_filename: str
    date_prefix: str


@dataclass(frozen=True)
class FileOutcome:
    status: ProcessStatus
    error: str | None = None
    renamed_path: Path | None = None
    archived_path: Path | None = None


def validate_image(image_path: Path) -> tuple[int, int, str]:
    """
    Decode enough of ``image_path`` to be sure it is a real image.

    RAW formats go through rawpy, everything else through Pillow.

    Returns:
        Tuple of (width, height, pixel mode)

    Raises:
        InvalidImageError: unreadable data, empty pixel buffer, zero size or unknown mode

    """
    if image_path.suffix.lower() in NON_RAW_EXTENSIONS:
        return _validate_with_pil(image_path)
    return _validate_with_rawpy(image_path)


def _validate_with_pil(image_path: Path) -> tuple[int, int, str]:
    try:
        with Image.open(image_path) as img:
            pixels = img.load()
            width, height = img.size
            mode = img.mode
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        msg = f"Cannot decode image: {exc}"
        raise InvalidImageError(msg) from exc

    if width <= 0 or height <= 0:
        msg = f"Invalid dimensions {width}x{height}"
        raise InvalidImageError(msg)
    if pixels is None:
        msg = "Image has no pixel data"
        raise InvalidImageError(msg)
    try:
        ImageMode.getmode(mode)
    except KeyError as exc:
        msg = f"Unsupported pixel format {mode!r}"
        raise InvalidImageError(msg) from exc
    return width, height, mode


def _validate_with_rawpy(image_path: Path) -> tuple[int, int, str]:
    try:
        with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
            width, height = raw.sizes.width, raw.sizes.height
            pixel_count = raw.raw_image_visible.size
    except (rawpy.LibRawError, OSError, ValueError) as exc:
        msg = f"Cannot decode RAW image: {exc}"
        raise InvalidImageError(msg) from exc

    if width <= 0 or height <= 0 or pixel_count == 0:
        msg = f"RAW image has no pixel data ({width}x{height})"
        raise InvalidImageError(msg)
    return width, height, "RAW"


def format_date_prefix(taken: datetime) -> str:
    """
    Format a capture time as a filename prefix.

    Examples:
        >>> format_date_prefix(datetime(2020, 5, 1, 10, 0, 0))
        '2020-05-01_10-00-00_'

    """
    return taken.strftime(DATE_PREFIX_FORMAT)


def ensure_extension(filename: str, extension: str) -> str:
    """
    Append the source extension when the model dropped it.

    Examples:
        >>> ensure_extension("beach_sunset", ".jpg")
        'beach_sunset.jpg'
        >>> ensure_extension("beach_sunset.JPG", ".jpg")
        'beach_sunset.JPG'

    """
    if not extension or filename.lower().endswith(extension.lower()):
        return filename
    return f"{filename}{extension}"


def fit_length(filename: str, max_length: int) -> str:
    """
    Trim the stem so the whole name fits in ``max_length`` characters.

    Examples:
        >>> fit_length("a_very_long_name.jpg", 10)
        'a_very.jpg'

    """
    if len(filename) <= max_length:
        return filename
    stem, dot, extension = filename.rpartition(".")
    if not dot:
        stem, extension = filename, ""
    suffix = f".{extension}" if extension else ""
    stem = stem[: max(1, max_length - len(suffix))].rstrip("_- .")
    return f"{stem}{suffix}"


def check_filename(filename: str) -> str:
    """
    Reject names with characters that are reserved on common filesystems.

    Raises:
        InvalidFilenameError: reserved or control characters, or a name that is only dots

    """
    bad = sorted({c for c in filename if c in RESERVED_FILENAME_CHARS or ord(c) < FIRST_PRINTABLE})
    if bad:
        msg = f"Generated filename {filename!r} contains reserved characters: {''.join(bad)!r}"
        raise InvalidFilenameError(msg)
    if not filename.strip(" ."):
        msg = f"Generated filename {filename!r} is empty"
        raise InvalidFilenameError(msg)
    return filename


def reserve_path(path: Path) -> Path:
    """
    Claim ``path`` or, if taken, the first free ``stem_N.suffix`` next to it.

    The name is claimed by creating an empty file with exclusive mode, so concurrent workers
    never pick the same destination. The caller owns the placeholder and either overwrites
    or deletes it.
    """
    numbered = (
        path.with_name(f"{path.stem}_{counter}{path.suffix}")
        for counter in range(1, MAX_UNIQUE_SUFFIX)
    )
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")  # noqa: DTZ005
    fallback = path.with_name(f"{path.stem}_{timestamp}{path.suffix}")
    for candidate in chain([path], numbered, [fallback]):
        try:
            candidate.open("xb").close()
        except FileExistsError:
            continue
        return candidate
    msg = f"No free name left for {path}"
    raise FileExistsError(msg)


def plan_destinations(source: Path, new_name: str, date_prefix: str) -> RenamePlan:
    """Create the ``renamed`` and ``original`` folders next to ``source`` and reserve free paths."""
    renamed_dir = source.parent / RENAMED_FOLDER
    original_dir = source.parent / ORIGINAL_FOLDER
    renamed_dir.mkdir(parents=True, exist_ok=True)
    original_dir.mkdir(parents=True, exist_ok=True)
    renamed_destination = reserve_path(renamed_dir / new_name)
    try:
        original_archive = reserve_path(original_dir / source.name)
    except OSError:
        renamed_destination.unlink(missing_ok=True)
        raise
    return RenamePlan(
        renamed_destination=renamed_destination,
        original_archive=original_archive,
        generated_filename=new_name,
        date_prefix=date_prefix,
    )


class PhotoProcessor:
    """
    Run the rename pipeline for one file at a time.

    Args:
        config: Runtime configuration
        client: Inference client shared by every file of the batch
        capture_resolver: Strategy deciding when a photo was taken

    """

    def __init__(
        self,
        config: RenamerConfig,
        client: InferenceClient,
        *,
        capture_resolver: CaptureTimeResolver | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.capture_resolver = capture_resolver or CaptureTimeResolver(
            folder_fallback=config.folder_date_fallback,
        )

    def process(self, task: FileTask) -> FileOutcome:
        """Process one file; never raises, every failure becomes a FAILED outcome."""
        with logger.contextualize(file=task.source_path.name, index=task.progress):
            try:
                return self._run(task)
            except RenamerError as exc:
                log.error("file_failed", error=str(exc), error_type=type(exc).__name__)
                return FileOutcome(ProcessStatus.FAILED, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                log.exception("file_failed_unexpectedly", error=str(exc))
                return FileOutcome(ProcessStatus.FAILED, error=f"{type(exc).__name__}: {exc}")

    def _run(self, task: FileTask) -> FileOutcome:
        source = task.source_path
        log.info("processing_file", path=str(source))

        # Step 1: the file may have been moved or deleted since enumeration
        if not source.exists():
            log.warning("file_vanished", path=str(source))
            return FileOutcome(ProcessStatus.SKIPPED, error="File no longer exists")

        # Step 2-4: validate, read EXIF, encode for the vision model
        width, height, mode = validate_image(source)
        log.debug("image_validated", width=width, height=height, mode=mode)
        metadata = self._extract_metadata(source)
        image_b64 = self._encode_image(source)

        # Step 5: describe the image
        keywords = self.analyze_image(image_b64, metadata)

        # Step 6: capture time, used for the prefix and for timestamps on the copy
        taken = self.capture_resolver.resolve(source, metadata)
        date_prefix = format_date_prefix(taken) if self.config.add_date_prefix and taken else ""

        # Step 7-8: name the file and make sure the filesystem accepts the name
        generated = self.generate_filename(
            source,
            keywords,
            has_metadata=metadata is not None,
            max_length=self.config.filename_max_length - len(date_prefix),
        )
        new_name = check_filename(f"{date_prefix}{generated}")

        # Step 9-14: copy, adjust, archive; roll back the copy on failure
        plan = plan_destinations(source, new_name, date_prefix)
        self._finalize(source, plan, taken, exif_taken=exif_datetime_original(metadata))
        log.info(
            "file_renamed",
            renamed=str(plan.renamed_destination),
            archived=str(plan.original_archive),
        )
        return FileOutcome(
            ProcessStatus.SUCCESS,
            renamed_path=plan.renamed_destination,
            archived_path=plan.original_archive,
        )

    def _extract_metadata(self, source: Path) -> ImageMetadata | None:
        try:
            metadata = read_image_metadata(source)
        except Exception as exc:  # noqa: BLE001
            log.warning("metadata_extraction_failed", error=str(exc))
            return None
        if metadata is None:
            log.debug("no_exif_metadata")
        return metadata

    def _encode_image(self, source: Path) -> str:
        encoded = base64.b64encode(source.read_bytes()).decode("ascii")
        if len(encoded) > self.config.max_payload_bytes:
            log.error(
                "encoded_image_too_large",
                size_mb=round(len(encoded) / (1024 * 1024), 2),
                limit_mb=self.config.max_payload_mb,
            )
            raise PayloadTooLargeError(len(encoded), self.config.max_payload_bytes)
        return encoded

    def analyze_image(self, image_b64: str, metadata: ImageMetadata | None) -> list[str]:
        """Ask the vision model for keywords."""
        prompt = ANALYSIS_PROMPT
        if metadata:
            triples = json.dumps(metadata_as_triples(metadata), ensure_ascii=False)
            prompt = f"{prompt}\n\n{ANALYSIS_METADATA_SECTION.format(triples=triples)}"

        result = self.client.invoke(self.config.vision_model, prompt, {"images": [image_b64]})
        try:
            analysis = ImageAnalysis.model_validate(_as_mapping(result))
        except SchemaError as exc:
            msg = f"Unexpected analysis result: {exc}"
            raise NoKeywordsError(msg) from exc

        keywords = list(dict.fromkeys(kw.strip() for kw in analysis.keywords if kw.strip()))
        if not keywords:
            msg = "Image analysis returned no keywords"
            raise NoKeywordsError(msg)
        log.info("keywords_generated", keywords=keywords)
        return keywords

    def generate_filename(
        self,
        source: Path,
        keywords: list[str],
        *,
        has_metadata: bool,
        max_length: int,
    ) -> str:
        """Ask the text model for a filename that keeps the source extension."""
        prompt = FILENAME_PROMPT.format(
            original_name=source.name,
            keywords=", ".join(keywords),
            has_metadata="yes" if has_metadata else "no",
            max_length=max_length,
            extension=source.suffix,
        )
        result = self.client.invoke(self.config.text_model, prompt)
        try:
            generated = GeneratedFilename.model_validate(_as_mapping(result))
        except SchemaError as exc:
            msg = f"Unexpected filename result: {exc}"
            raise FilenameGenerationError(msg) from exc

        filename = generated.filename.strip().rstrip(".")
        if not filename or filename.lower() == source.suffix.lower():
            msg = "Filename generation returned an empty name"
            raise FilenameGenerationError(msg)
        # Check before trimming so a reserved character cannot be cut off and slip through.
        check_filename(filename)
        filename = fit_length(ensure_extension(filename, source.suffix), max_length)
        log.info("filename_generated", filename=filename)
        return filename

    def _finalize(
        self,
        source: Path,
        plan: RenamePlan,
        taken: datetime | None,
        *,
        exif_taken: datetime | None,
    ) -> None:
        try:
            shutil.copy2(source, plan.renamed_destination)
            log.debug("renamed_copy_written", path=str(plan.renamed_destination))

            if taken is not None:
                # Only atime and mtime can be set; the creation time stays as the copy made it.
                try:
                    stamp_file_times(plan.renamed_destination, taken)
                except OSError as exc:
                    log.warning("modification_time_stamp_failed", error=str(exc))
                else:
                    log.debug("modification_time_stamped", taken=taken.isoformat())

            if self.config.preserve_metadata and exif_taken is not None:
                try:
                    write_capture_time(plan.renamed_destination, exif_taken)
                except Exception as exc:  # noqa: BLE001
                    log.warning("metadata_preservation_failed", error=str(exc))

            shutil.move(source, plan.original_archive)
            log.debug("original_archived", path=str(plan.original_archive))
        except Exception:
            self._rollback(source, plan)
            raise

    @staticmethod
    def _rollback(source: Path, plan: RenamePlan) -> None:
        # The archive slot is ours only while the source has not been moved into it.
        targets = [plan.renamed_destination]
        if source.exists():
            targets.append(plan.original_archive)
        for target in targets:
            if not target.exists():
                continue
            try:
                target.unlink()
            except OSError as exc:
                log.error("rollback_failed", path=str(target), error=str(exc))
            else:
                log.warning("reserved_file_rolled_back", path=str(target))


def _as_mapping(result: Any) -> dict[str, Any]:  # noqa: ANN401
    return result if isinstance(result, dict) else {}

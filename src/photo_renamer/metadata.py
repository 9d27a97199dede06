"""
EXIF metadata helpers.

- ``read_image_metadata`` flattens the IFD0 and Exif IFD tags into ``{tag_id: TagValue}``,
  through Pillow for common formats and ExifTool for RAW files.
- ``CaptureTimeResolver`` decides when a photo was taken.
- ``write_capture_time`` rewrites the EXIF date tags of a copy with ExifTool and stamps its
  filesystem timestamps.
"""

import os
import re
from datetime import datetime
from fractions import Fraction
from pathlib import Path
from typing import Annotated, Literal

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from loguru import logger
from PIL import ExifTags, Image
from pydantic import BaseModel, Field

log = logger.bind(component="metadata")

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
DATETIME_ORIGINAL = ExifTags.Base.DateTimeOriginal.value
# IFD pointers are offsets, not metadata worth describing to a model.
POINTER_TAGS = frozenset(
    {
        ExifTags.Base.ExifOffset.value,
        ExifTags.Base.GPSInfo.value,
        ExifTags.Base.ExifInteroperabilityOffset.value,
    },
)
MAX_STRING_VALUE_LENGTH = 200
# Formats Pillow decodes; anything else (CR3, ARW, NEF, DNG...) goes through rawpy and ExifTool.
NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".jpe",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".tif",
        ".tiff",
        ".jp2",
        ".heic",
        ".heif",
        ".avif",
        ".psd",
        ".ico",
        ".ppm",
        ".pgm",
        ".pbm",
    },
)
YEAR_MONTH_FOLDER = re.compile(r"(?<!\d)(?P<year>(?:19|20)\d{2})[-_. ]?(?P<month>0[1-9]|1[0-2])(?!\d)")
YEAR_FOLDER = re.compile(r"^(?P<year>(?:19|20)\d{2})$")
MONTH_FOLDER = re.compile(r"^(?P<month>0?[1-9]|1[0-2])(?:[-_ ].*)?$")


class StringValue(BaseModel):
    type: Literal["string"] = "string"
    value: str


class IntValue(BaseModel):
    type: Literal["int"] = "int"
    value: int


class RationalValue(BaseModel):
    type: Literal["rational"] = "rational"
    numerator: int
    denominator: int

    @property
    def value(self) -> str:
        return f"{self.numerator}/{self.denominator}"


TagValue = Annotated[StringValue | IntValue | RationalValue, Field(discriminator="type")]
ImageMetadata = dict[int, TagValue]


def to_tag_value(raw: object) -> TagValue | None:
    """
    Convert a Pillow EXIF value into the typed union, or None for unsupported shapes.

    Examples:
        >>> to_tag_value("Canon\\x00")
        StringValue(type='string', value='Canon')
        >>> to_tag_value(Fraction(1, 250)).value
        '1/250'
        >>> to_tag_value(b"\\x00\\x01") is None
        True

    """
    if isinstance(raw, bool):
        return IntValue(value=int(raw))
    if isinstance(raw, int):
        return IntValue(value=raw)
    if isinstance(raw, str):
        text = raw.strip("\x00 ").strip()
        if not text:
            return None
        return StringValue(value=text[:MAX_STRING_VALUE_LENGTH])
    # IFDRational exposes numerator/denominator like Fraction; zero denominators are legal in EXIF.
    numerator = getattr(raw, "numerator", None)
    denominator = getattr(raw, "denominator", None)
    if isinstance(numerator, int) and isinstance(denominator, int):
        return RationalValue(numerator=numerator, denominator=denominator)
    if isinstance(raw, float):
        fraction = Fraction(raw).limit_denominator(10_000)
        return RationalValue(numerator=fraction.numerator, denominator=fraction.denominator)
    return None


def read_image_metadata(image_path: Path) -> ImageMetadata | None:
    """
    Read EXIF tags from IFD0 and the Exif sub-IFD.

    Pillow formats are read with Pillow; RAW files are read with ExifTool.
    Returns None when the file has no readable EXIF; callers treat that as "no metadata".

    Raises:
        OSError: the file cannot be opened or decoded by Pillow, or ExifTool is missing.
        ExifToolExecuteError: ExifTool failed on a RAW file.

    """
    if image_path.suffix.lower() in NON_RAW_EXTENSIONS:
        tags = _read_tags_with_pillow(image_path)
    else:
        tags = _read_tags_with_exiftool(image_path)

    metadata: ImageMetadata = {}
    for tag_id, raw in tags.items():
        if tag_id in POINTER_TAGS:
            continue
        if (value := to_tag_value(raw)) is not None:
            metadata[int(tag_id)] = value

    if not metadata:
        return None
    log.debug("exif_tags_read", count=len(metadata))
    return metadata


def _read_tags_with_pillow(image_path: Path) -> dict[int, object]:
    with Image.open(image_path) as img:
        exif = img.getexif()
        tags: dict[int, object] = dict(exif.items())
        tags.update(exif.get_ifd(ExifTags.IFD.Exif))
    return tags


def _read_tags_with_exiftool(image_path: Path) -> dict[int, object]:
    """
    Read the EXIF group of a RAW file; ``-D`` makes ExifTool report each tag as ``{id, val}``.

    Examples:
        >>> _read_tags_with_exiftool(Path("/photos/image.cr3"))  # doctest: +SKIP
        {271: 'Canon', 36867: '2020:05:01 10:00:00', 33434: 0.004}

    """
    with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
        blocks = et.get_tags(files=[str(image_path)], tags=["EXIF:All"], params=["-D"])

    tags: dict[int, object] = {}
    for block in blocks:
        for entry in block.values():
            if isinstance(entry, dict) and isinstance(entry.get("id"), int):
                tags[entry["id"]] = entry.get("val")
    log.debug("raw_exif_read_with_exiftool", file=image_path.name, count=len(tags))
    return tags


def metadata_as_triples(metadata: ImageMetadata) -> list[dict[str, object]]:
    """
    Serialize metadata as ``{id, value, type}`` objects for prompts.

    Examples:
        >>> metadata_as_triples({271: StringValue(value="Canon")})
        [{'id': 271, 'value': 'Canon', 'type': 'string'}]

    """
    return [
        {"id": tag_id, "value": value.value, "type": value.type}
        for tag_id, value in sorted(metadata.items())
    ]


def exif_datetime_original(metadata: ImageMetadata | None) -> datetime | None:
    """Parse EXIF DateTimeOriginal (``YYYY:MM:DD HH:MM:SS``) when present and well formed."""
    if not metadata:
        return None
    tag = metadata.get(DATETIME_ORIGINAL)
    if not isinstance(tag, StringValue):
        return None
    try:
        return datetime.strptime(tag.value[:19], EXIF_DATETIME_FORMAT)  # noqa: DTZ007
    except ValueError:
        log.warning("exif_date_unparseable", value=tag.value)
        return None


def file_creation_time(path: Path) -> datetime | None:
    """Creation time where the platform records one (``st_birthtime``, or ctime on Windows)."""
    try:
        stat = path.stat()
    except OSError:
        return None
    birth = getattr(stat, "st_birthtime", None)
    if birth is None and os.name == "nt":
        birth = stat.st_ctime
    if birth is None:
        return None
    return datetime.fromtimestamp(birth)  # noqa: DTZ006


def folder_date(path: Path) -> datetime | None:
    """
    Guess a year and month from the names of the folders containing ``path``.

    Recognizes ``2019-05``/``201905``-style folder names and ``2019/05`` nesting.
    The day is set to the first of the month.

    Examples:
        >>> folder_date(Path("/photos/2019-05 Lisbon/IMG_1.jpg"))
        datetime.datetime(2019, 5, 1, 0, 0)
        >>> folder_date(Path("/photos/2021/07/IMG_1.jpg"))
        datetime.datetime(2021, 7, 1, 0, 0)
        >>> folder_date(Path("/photos/misc/IMG_1.jpg")) is None
        True

    """
    parents = [parent.name for parent in path.parents if parent.name]
    for index, name in enumerate(parents):
        if match := YEAR_MONTH_FOLDER.search(name):
            return datetime(int(match["year"]), int(match["month"]), 1)  # noqa: DTZ001
        if index + 1 < len(parents) and (month := MONTH_FOLDER.match(name)):
            if year := YEAR_FOLDER.match(parents[index + 1]):
                return datetime(int(year["year"]), int(month["month"]), 1)  # noqa: DTZ001
    return None


class CaptureTimeResolver:
    """
    Resolve when a photo was taken: EXIF original capture, then file creation, then folder name.

    The folder-name guess is the least reliable and can be switched off.
    """

    def __init__(self, *, folder_fallback: bool = True) -> None:
        self.folder_fallback = folder_fallback

    def resolve(self, image_path: Path, metadata: ImageMetadata | None) -> datetime | None:
        if (taken := exif_datetime_original(metadata)) is not None:
            log.debug("capture_time_from_exif", taken=taken.isoformat())
            return taken
        if (created := file_creation_time(image_path)) is not None:
            log.debug("capture_time_from_file", taken=created.isoformat())
            return created
        if self.folder_fallback and (guessed := folder_date(image_path)) is not None:
            log.info("capture_time_from_folder_name", taken=guessed.isoformat())
            return guessed
        log.debug("capture_time_unknown")
        return None


def stamp_file_times(path: Path, taken: datetime) -> None:
    """
    Set access and modification times of ``path`` to ``taken``.

    The creation time is left as is: ``os.utime`` cannot set it and no portable call can.
    """
    timestamp = taken.timestamp()
    os.utime(path, (timestamp, timestamp))


def write_capture_time(image_path: Path, taken: datetime) -> None:
    """
    Rewrite the EXIF date tags of ``image_path`` in place, then restamp its filesystem times.

    Raises:
        ExifToolExecuteError, OSError and friends; callers treat this step as best effort.

    """
    value = taken.strftime(EXIF_DATETIME_FORMAT)
    tags = {
        "EXIF:DateTimeOriginal": value,
        "EXIF:CreateDate": value,
        "EXIF:ModifyDate": value,
    }
    with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
        et.set_tags(files=[str(image_path)], tags=tags, params=["-overwrite_original"])
    stamp_file_times(image_path, taken)
    log.info("capture_time_written", file=image_path.name, taken=value)

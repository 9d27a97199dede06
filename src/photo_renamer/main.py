#!/usr/bin/env python3
"""
Photo Renamer: CLI app to give photos descriptive filenames using a local AI model.

Each photo is described by a vision-language model, named by a text model, copied into a
``renamed/`` folder under its new name, and the untouched original is moved into an
``original/`` folder next to it. Folders containing a ``*.skip`` file are left alone.

Requirements:
 - Ollama (or a compatible server) running with a vision and a text model.
 - Exiftool installed and available in PATH to rewrite EXIF dates on the renamed copies
   (optional; disable with --no-preserve-metadata).

"""
# ruff: noqa: PLR0913

import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from . import __version__
from .batch import BatchCoordinator
from .config import RenamerConfig
from .errors import BatchError, ConfigError
from .file_lock import FileLockChecker
from .inference import InferenceClient
from .processor import PhotoProcessor

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Cyclopts app
app = App(
    name="photo-renamer",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler; records without a bound component are tagged "app"
    logger.remove()
    logger.configure(extra={"component": "app"})

    # Add file logging
    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_renamer.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[component]:<15} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    # Add console logging
    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<cyan>{extra[component]:<15}</cyan> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def build_config(config_file: Path | None, **overrides: object) -> RenamerConfig:
    """Load the JSON config file when given, otherwise start from defaults; apply CLI overrides."""
    if config_file is not None:
        return RenamerConfig.from_file(config_file, **overrides)
    return RenamerConfig().with_overrides(**overrides)


@app.default
def rename(
    working_directory: Annotated[
        Path | None,
        Parameter(
            name=("--dir", "-d"),
            validator=validators.Path(exists=True, file_okay=False),
            help="Folder to process recursively (default: config file or current folder)",
        ),
    ] = None,
    config_file: Annotated[
        Path | None,
        Parameter(
            name=("--config", "-c"),
            validator=validators.Path(exists=True, dir_okay=False),
            help="JSON configuration file; command-line options override its values",
        ),
    ] = None,
    *,
    extensions: Annotated[
        list[str] | None,
        Parameter(
            name=("--ext",),
            help="Image extension to process (repeat the option for several)",
        ),
    ] = None,
    excluded_folders: Annotated[
        list[str] | None,
        Parameter(name=("--exclude",), help="Folder name to skip (repeatable)"),
    ] = None,
    max_file_size_mb: Annotated[
        float | None,
        Parameter(name=("--max-file-size-mb",), help="Ignore files larger than this"),
    ] = None,
    api_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Inference server generate endpoint"),
    ] = None,
    api_timeout_seconds: Annotated[
        float | None,
        Parameter(name=("--timeout",), help="Per-request timeout in seconds"),
    ] = None,
    max_retries: Annotated[
        int | None,
        Parameter(name=("--retries",), help="Attempts per inference call"),
    ] = None,
    retry_delay_seconds: Annotated[
        float | None,
        Parameter(
            name=("--retry-delay",),
            help="Base backoff delay in seconds (doubles each retry)",
        ),
    ] = None,
    max_payload_mb: Annotated[
        float | None,
        Parameter(name=("--max-payload-mb",), help="Largest request sent to the server"),
    ] = None,
    circuit_max_failures: Annotated[
        int | None,
        Parameter(
            name=("--circuit-failures",),
            help="Consecutive inference failures before pausing all calls",
        ),
    ] = None,
    circuit_cooldown_seconds: Annotated[
        float | None,
        Parameter(
            name=("--circuit-cooldown",),
            help="Seconds to pause inference after the circuit opens",
        ),
    ] = None,
    vision_model: Annotated[
        str | None,
        Parameter(name=("--vision-model",), help="Model that describes the image"),
    ] = None,
    text_model: Annotated[
        str | None,
        Parameter(name=("--text-model",), help="Model that writes the filename"),
    ] = None,
    preserve_metadata: Annotated[
        bool | None,
        Parameter(
            name=("--preserve-metadata",),
            negative="--no-preserve-metadata",
            help="Rewrite EXIF capture dates on the renamed copy with ExifTool",
        ),
    ] = None,
    filename_max_length: Annotated[
        int | None,
        Parameter(name=("--max-length",), help="Maximum length of the new filename"),
    ] = None,
    randomize_order: Annotated[
        bool | None,
        Parameter(
            name=("--randomize",),
            negative="--in-order",
            help="Process files in random order",
        ),
    ] = None,
    add_date_prefix: Annotated[
        bool | None,
        Parameter(
            name=("--date-prefix",),
            negative="--no-date-prefix",
            help="Prefix names with the capture time (yyyy-MM-dd_HH-mm-ss_)",
        ),
    ] = None,
    folder_date_fallback: Annotated[
        bool | None,
        Parameter(
            name=("--folder-dates",),
            negative="--no-folder-dates",
            help="Guess the capture date from year/month folder names as a last resort",
        ),
    ] = None,
    workers: Annotated[
        int | None,
        Parameter(name=("--workers", "-j"), help="Files processed in parallel (default: 1)"),
    ] = None,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Rename photos with AI-generated descriptive names.

    Behavior:
    - Walks the folder recursively, skipping excluded folder names, folders holding a
      '*.skip' file, unsupported extensions and oversized files.
    - Skips files that are locked or open in an image viewer.
    - For each photo: validates it, asks the vision model for keywords, asks the text model
      for a filename, copies it to 'renamed/<new name>' and moves the original to
      'original/<name>'. A failure before the original is moved removes the copy.

    Exit status: returns 1 if the folder cannot be read or any file fails.

    Examples:
        photo-renamer -d ./photos
        photo-renamer -d ./photos --date-prefix --randomize
        photo-renamer -c renamer.json --vision-model llava:34b

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    try:
        config = build_config(
            config_file,
            working_directory=working_directory,
            supported_extensions=extensions,
            excluded_folders=excluded_folders,
            max_file_size_mb=max_file_size_mb,
            api_url=api_url,
            api_timeout_seconds=api_timeout_seconds,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            max_payload_mb=max_payload_mb,
            circuit_max_failures=circuit_max_failures,
            circuit_cooldown_seconds=circuit_cooldown_seconds,
            vision_model=vision_model,
            text_model=text_model,
            preserve_metadata=preserve_metadata,
            filename_max_length=filename_max_length,
            randomize_order=randomize_order,
            add_date_prefix=add_date_prefix,
            folder_date_fallback=folder_date_fallback,
            workers=workers,
        )
    except ConfigError as exc:
        logger.error("invalid_configuration", error=str(exc))
        raise SystemExit(1) from exc

    logger.info("starting_photo_renamer", **config.model_dump(mode="json"))

    with InferenceClient.from_config(config) as client:
        processor = PhotoProcessor(config, client)
        coordinator = BatchCoordinator(config, processor, lock_checker=FileLockChecker())
        try:
            stats = coordinator.run()
        except BatchError as exc:
            logger.error("batch_aborted", error=str(exc))
            raise SystemExit(1) from exc

    if stats.failure_count:
        raise SystemExit(1)


if __name__ == "__main__":
    app()

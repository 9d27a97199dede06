"""Enumerate eligible photos, dispatch them to the processor and keep the run statistics."""

import os
import random
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .config import ORIGINAL_FOLDER, RENAMED_FOLDER, RenamerConfig
from .errors import BatchError
from .file_lock import FileLockChecker
from .processor import FileOutcome, FileTask, PhotoProcessor, ProcessStatus

log = logger.bind(component="batch")

SKIP_MARKER_SUFFIX = ".skip"


@dataclass(frozen=True)
class FailedFile:
    path: Path
    error_message: str


@dataclass
class BatchStats:
    total_files: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    failed_files: list[FailedFile] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def record(self, path: Path, outcome: FileOutcome) -> None:
        if outcome.status is ProcessStatus.SUCCESS:
            self.success_count += 1
        elif outcome.status is ProcessStatus.SKIPPED:
            self.skipped_count += 1
        else:
            self.failure_count += 1
            self.failed_files.append(FailedFile(path, outcome.error or "Unknown error"))


def has_skip_marker(directory: Path) -> bool:
    """True when ``directory`` directly contains a ``*.skip`` file."""
    try:
        return any(
            entry.is_file() and entry.name.lower().endswith(SKIP_MARKER_SUFFIX)
            for entry in directory.iterdir()
        )
    except OSError as exc:
        log.warning("directory_unreadable", path=str(directory), error=str(exc))
        return False


def iter_eligible_files(config: RenamerConfig) -> Iterator[Path]:
    """
    Walk the working directory and yield files the batch should process.

    Excluded folder names, the ``renamed`` and ``original`` output folders, and folders
    holding a ``*.skip`` marker are pruned together with everything below them. Files are
    filtered by extension and size; order is sorted per directory so runs are reproducible.

    Raises:
        BatchError: the working directory is missing or is not a directory.

    """
    root = config.working_directory
    if not root.is_dir():
        msg = f"Working directory does not exist or is not a directory: {root}"
        raise BatchError(msg)
    if has_skip_marker(root):
        log.info("directory_skipped_by_marker", path=str(root))
        return

    excluded = {
        name.casefold() for name in (*config.excluded_folders, RENAMED_FOLDER, ORIGINAL_FOLDER)
    }
    extensions = set(config.supported_extensions)
    max_size = config.max_file_size_bytes

    def _on_error(exc: OSError) -> None:
        log.warning("directory_walk_error", path=exc.filename, error=exc.strerror)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        current = Path(dirpath)
        kept: list[str] = []
        for name in sorted(dirnames):
            if name.casefold() in excluded:
                log.debug("directory_excluded", path=str(current / name))
            elif has_skip_marker(current / name):
                log.info("directory_skipped_by_marker", path=str(current / name))
            else:
                kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            path = current / name
            if path.suffix.lower() not in extensions:
                continue
            try:
                size = path.stat().st_size
            except OSError as exc:
                log.warning("file_stat_failed", path=str(path), error=str(exc))
                continue
            if size > max_size:
                log.info("file_too_large", path=str(path), size_mb=round(size / (1024 * 1024), 1))
                continue
            yield path


class BatchCoordinator:
    """
    Run one batch: enumerate, order, lock-check, process, summarize.

    Args:
        config: Runtime configuration
        processor: Pipeline applied to each file
        lock_checker: Lock detection consulted before each file
        rng: Random source used when ``randomize_order`` is set

    """

    def __init__(
        self,
        config: RenamerConfig,
        processor: PhotoProcessor,
        *,
        lock_checker: FileLockChecker | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.processor = processor
        self.lock_checker = lock_checker or FileLockChecker()
        self.rng = rng or random.Random()  # noqa: S311

    def collect_files(self) -> list[Path]:
        files = list(iter_eligible_files(self.config))
        if self.config.randomize_order:
            self.rng.shuffle(files)
        log.info(
            "image_files_discovered",
            count=len(files),
            root=str(self.config.working_directory),
            randomized=self.config.randomize_order,
        )
        return files

    def run(self) -> BatchStats:
        """
        Process every eligible file and return the statistics.

        Raises:
            BatchError: enumeration failed; nothing was processed.

        """
        started = time.perf_counter()
        files = self.collect_files()
        stats = BatchStats(total_files=len(files))
        tasks = [
            FileTask(source_path=path, sequence_index=idx, total_count=len(files))
            for idx, path in enumerate(files, start=1)
        ]

        if self.config.workers > 1 and len(tasks) > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                futures = {pool.submit(self._dispatch, task): task for task in tasks}
                for future in as_completed(futures):
                    stats.record(futures[future].source_path, future.result())
        else:
            for task in tasks:
                stats.record(task.source_path, self._dispatch(task))

        stats.elapsed_seconds = time.perf_counter() - started
        log_summary(stats)
        return stats

    def _dispatch(self, task: FileTask) -> FileOutcome:
        lock = self.lock_checker.check_lock(task.source_path)
        if lock.is_locked:
            log.warning(
                "file_skipped_locked",
                file=task.source_path.name,
                index=task.progress,
                reason=lock.reason,
            )
            return FileOutcome(ProcessStatus.SKIPPED, error=lock.reason)
        return self.processor.process(task)


def log_summary(stats: BatchStats) -> None:
    log.info(
        "processing_summary",
        total_files=stats.total_files,
        successful=stats.success_count,
        failed=stats.failure_count,
        skipped=stats.skipped_count,
        elapsed_seconds=round(stats.elapsed_seconds, 1),
    )
    for failed in stats.failed_files:
        log.error("file_failed_summary", file=str(failed.path), error=failed.error_message)

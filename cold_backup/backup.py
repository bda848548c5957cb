"""Core cold backup logic.

A run moves through the stages of :class:`Stage` strictly in order. Only the
hot sync is allowed to fail without ending the run; every other failure stops
the run at the stage where it happened and is reported as a
:class:`PipelineResult`.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Callable, Iterator, List, Optional, Protocol

from .archive import ArchiveDescriptor, ArchiveError, archive_name, create_backup
from .cloud import UploadError, WriteSink, upload_to_s3
from .config import BackupConfig
from .errors import ConnectivityError
from .fleet import TARGET_INACTIVE, TARGET_LAUNCHED, SchedulerError, ServiceController
from .pipe import PipeReader
from .sync import SyncError, sync_once

LOGGER = logging.getLogger(__name__)


class SafetyViolation(Exception):
    """Raised when the dependent service is active or its state is unknown."""


STAGE_ERRORS = (
    ArchiveError,
    ConnectivityError,
    OSError,
    SafetyViolation,
    SchedulerError,
    SyncError,
    UploadError,
)


class StageFailure(Exception):
    """A run stopped at *stage* because of *cause*."""

    def __init__(self, stage: "Stage", cause: BaseException) -> None:
        super().__init__(f"{stage.value}: {cause}")
        self.stage = stage
        self.cause = cause


class Stage(str, Enum):
    INIT = "init"
    HOT_SYNC = "hot_sync"
    SAFETY_CHECK = "safety_check"
    SERVICE_STOP = "service_stop"
    COLD_SYNC = "cold_sync"
    SERVICE_START = "service_start"
    ARCHIVING = "archiving"
    UPLOADING = "uploading"
    DONE = "done"


@dataclass
class PipelineResult:
    stage: Stage
    archive: ArchiveDescriptor
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.stage is Stage.DONE and self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class WriterProvider(Protocol):
    def get_writer(self, name: str) -> WriteSink:
        ...


@dataclass
class BackupRunner:
    config: BackupConfig
    controller: ServiceController
    writer_provider: WriterProvider
    sync: Callable[[str, str], None] = sync_once
    archiver: Callable[[str, str], PipeReader] = create_backup
    uploader: Callable[[WriteSink, PipeReader], int] = upload_to_s3
    clock: Callable[[], float] = time.monotonic
    logger: logging.Logger = LOGGER
    transitions: List[Stage] = field(default_factory=list)

    def run(self, archive: Optional[ArchiveDescriptor] = None) -> PipelineResult:
        """Execute one complete backup run."""

        started = self.clock()
        archive = archive or archive_name(self.config.service_name, self.config.env)
        self.transitions = [Stage.INIT]
        try:
            self._hot_sync()
            self._ensure_dependent_inactive()
            with self._stage(Stage.SERVICE_STOP):
                self.controller.set_unit_target_state(self.config.database_unit, TARGET_INACTIVE)
            self._cold_sync()
            with self._stage(Stage.SERVICE_START):
                self.controller.set_unit_target_state(self.config.database_unit, TARGET_LAUNCHED)
            self._log_unit_state(self.config.database_unit)
            self._archive_and_upload(archive)
        except StageFailure as failure:
            duration = self.clock() - started
            self.logger.error(
                "Backup process failed: stage=%s archive=%s err=%s duration=%s",
                failure.stage.value,
                archive.name,
                failure.cause,
                timedelta(seconds=duration),
            )
            return PipelineResult(failure.stage, archive, failure.cause, duration)

        self.transitions.append(Stage.DONE)
        duration = self.clock() - started
        self.logger.info(
            "Artefact successfully uploaded to S3; backup process complete: archive=%s duration=%s",
            archive.name,
            timedelta(seconds=duration),
        )
        return PipelineResult(Stage.DONE, archive, None, duration)

    # ------------------------------------------------------------------
    @contextmanager
    def _stage(self, stage: Stage) -> Iterator[None]:
        self.transitions.append(stage)
        self.logger.debug("Entering stage %s.", stage.value)
        try:
            yield
        except STAGE_ERRORS as exc:
            raise StageFailure(stage, exc) from exc

    # ------------------------------------------------------------------
    def _hot_sync(self) -> None:
        source, target = self.config.data_folder, self.config.target_folder
        with self._stage(Stage.HOT_SYNC):
            self.logger.info("Starting first hot rsync process: dataFolder=%s targetFolder=%s", source, target)
            try:
                self.sync(source, target)
            except SyncError as exc:
                self.logger.warning(
                    "Error synchronising files while database is running (i.e. hot); re-trying once: err=%s",
                    exc,
                )
                try:
                    self.sync(source, target)
                except SyncError as retry_exc:
                    self.logger.warning(
                        "Encountered another error synchronising files while database is running (i.e. hot); "
                        "the cold backup phase will consequently take longer than usual: err=%s",
                        retry_exc,
                    )

    def _ensure_dependent_inactive(self) -> None:
        dependent = self.config.dependent_unit
        with self._stage(Stage.SAFETY_CHECK):
            try:
                active = self.controller.is_service_active(dependent)
            except Exception as exc:
                # Any doubt about the dependent's state blocks the stop.
                self.logger.error("Could not check state of %s before stopping the database: %s", dependent, exc)
                raise SafetyViolation(f"State of dependent service '{dependent}' is unknown: {exc}") from exc
            if active:
                self.logger.error(
                    "Dependent service %s is still active; it could start %s again during backup creation.",
                    dependent,
                    self.config.database_unit,
                )
                raise SafetyViolation(f"Dependent service '{dependent}' is active.")
            self.logger.info("Dependent service %s is inactive, shutting down %s.", dependent,
                             self.config.database_unit)

    def _cold_sync(self) -> None:
        source, target = self.config.data_folder, self.config.target_folder
        with self._stage(Stage.COLD_SYNC):
            self.logger.info("Starting cold rsync process: dataFolder=%s targetFolder=%s", source, target)
            self.sync(source, target)
            self.logger.info("Cold rsync completed, restarting %s.", self.config.database_unit)

    def _log_unit_state(self, name: str) -> None:
        # Best effort only: the start request is not confirmed.
        try:
            state = self.controller.find_unit(name)
        except (ConnectivityError, SchedulerError) as exc:
            self.logger.warning("Could not read state of %s after start request: %s", name, exc)
            return
        if state is None:
            self.logger.warning("Unit %s not listed by fleet after start request.", name)
        else:
            self.logger.info("Unit %s after start request: active=%s sub=%s", name, state.active_state,
                             state.sub_state)

    def _archive_and_upload(self, archive: ArchiveDescriptor) -> None:
        with self._stage(Stage.ARCHIVING):
            stream = self.archiver(self.config.target_folder, archive.name)
            self.logger.info("Archive %s started, streaming data to S3 as it is added.", archive.name)
        with self._stage(Stage.UPLOADING):
            try:
                sink = self.writer_provider.get_writer(archive.name)
            except BaseException:
                stream.close()
                raise
            copied = self.uploader(sink, stream)
            self.logger.info("Streamed archive %s: bytes=%d", archive.name, copied)


__all__ = [
    "BackupRunner",
    "PipelineResult",
    "SafetyViolation",
    "Stage",
    "StageFailure",
]

"""
Buffered Sample Writer
Accumulates processed samples and persists them in ordered segments
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from road_recorder.channels import Broadcast
from road_recorder.coordinator.clock import SessionClockAnchor
from road_recorder.errors import PersistenceError, SessionStateError
from road_recorder.models import SENSOR_CSV_HEADER, ProcessedSample, WriteResult, WriterState
from road_recorder.sensors.imu.config import ImuConfig
from .csv_storage import StorageProvider

logger = logging.getLogger(__name__)

IS_BUMP_COLUMN = SENSOR_CSV_HEADER.index('is_bump')
USER_FEEDBACK_COLUMN = SENSOR_CSV_HEADER.index('user_feedback')


@dataclass
class _Segment:
    """Detached buffer contents waiting for the writer task"""
    segment_id: int
    directory: Path
    samples: List[ProcessedSample]
    done: asyncio.Future = field(repr=False)


@dataclass
class _Rewrite:
    """Annotation update of rows already on disk"""
    directory: Path
    start_ms: int
    end_ms: int
    is_bump: Optional[bool]
    user_feedback: Optional[str]
    done: asyncio.Future = field(repr=False)


class BufferedSampleWriter:
    """
    Persistence controller for one session at a time

    Samples are appended to an in-memory buffer. When the buffer reaches the
    high-water mark, or on flush_buffer(), its contents are detached as a
    segment and queued. A single writer task consumes the queue, so segments
    reach storage in the order they were detached and never overlap.

    Each segment gets up to write_max_attempts attempts with exponential
    backoff; every attempt is published as a WriteResult. A segment whose
    attempts are exhausted is dropped and reported through the error
    callback.

    The job queue is unbounded so append() never waits on storage. Every
    backlog_warning_segments pending jobs a backlog warning is logged.
    """

    def __init__(
            self,
            storage: StorageProvider,
            config: Optional[ImuConfig] = None,
            status: Optional[Broadcast] = None,
    ):
        """
        Args:
            storage: Blocking storage provider, called from worker threads.
            config:  ImuConfig carrying buffer and retry settings.
            status:  Channel receiving one WriteResult per write attempt.
        """
        self.storage = storage
        self.config = config if config else ImuConfig.for_session()
        self.status = status if status is not None else Broadcast(
            'write_status', maxsize=self.config.channel_size)

        self.state = WriterState.IDLE
        self._buffer: List[ProcessedSample] = []
        self._session_directory: Optional[Path] = None
        self._anchor: Optional[SessionClockAnchor] = None
        self._queue: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._error_callback: Optional[Callable[[str], None]] = None

        self._segment_seq = 0
        self._total_rows_written = 0
        self._total_processed = 0
        self._rows_dropped = 0
        self.consecutive_failed_flushes = 0
        self._stopping = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state in (WriterState.COLLECTING, WriterState.FLUSHING)

    @property
    def session_directory(self) -> Optional[Path]:
        return self._session_directory

    @property
    def sensor_file(self) -> Optional[Path]:
        if self._session_directory is None:
            return None
        return self._session_directory / self.config.sensor_file_name

    def set_session_directory(self, path: Union[str, Path, None]):
        if self.is_active:
            raise SessionStateError("Cannot change the session directory while recording")
        self._session_directory = Path(path) if path is not None else None

    def set_write_error_callback(self, callback: Optional[Callable[[str], None]]):
        """Register a callable receiving a message for every dropped segment"""
        self._error_callback = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, anchor: SessionClockAnchor):
        """
        Begin a session: reset buffer and counters, start the writer task.

        Args:
            anchor: Clock anchor of the session being recorded.

        Raises:
            SessionStateError if a session is already active.
        """
        if self.is_active:
            raise SessionStateError("Writer already has an active session")

        self._anchor = anchor
        self._buffer = []
        self._segment_seq = 0
        self._total_rows_written = 0
        self._total_processed = 0
        self._rows_dropped = 0
        self.consecutive_failed_flushes = 0

        self._queue = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._writer_loop(), name='sample-writer')
        self.state = WriterState.COLLECTING

        if self._session_directory is None:
            logger.warning("⚠ No session directory set, samples will not be persisted")
        logger.info(f"✓ Sample writer started (directory={self._session_directory})")

    async def stop(self):
        """
        Finish the session.

        Lets the in-flight write complete, flushes the residual buffer and
        waits until every queued segment has been handled.
        """
        if not self.is_active:
            logger.warning("Sample writer not running")
            return

        self._stopping = True
        residual = len(self._buffer)
        try:
            self._detach()
            await self._queue.put(None)
            await self._writer_task
        finally:
            self._writer_task = None
            self._queue = None
            self.state = WriterState.STOPPED
            self._stopping = False

        logger.info(
            f"✓ Sample writer stopped: {self._total_rows_written}/{self._total_processed} rows written "
            f"({residual} in final flush, {self._rows_dropped} dropped)"
        )

    # ------------------------------------------------------------------
    # Buffering
    # ------------------------------------------------------------------

    def append(self, sample: ProcessedSample):
        """
        Add a sample to the buffer; detach a segment at the high-water mark.

        Never waits on storage.
        """
        if not self.is_active or self._stopping:
            logger.warning("Sample appended outside an active session, ignoring")
            return

        self._buffer.append(sample)
        self._total_processed += 1
        if len(self._buffer) >= self.config.buffer_high_water:
            self._detach()

    async def flush_buffer(self) -> List[ProcessedSample]:
        """
        Detach the current buffer and wait until it has been handled.

        Cancelling the caller does not cancel the write; the segment stays
        queued and is written in order.

        Returns:
            The detached samples, in order (empty if the buffer was empty).
        """
        samples = list(self._buffer)
        segment = self._detach()
        if segment is not None:
            await asyncio.shield(segment.done)
        return samples

    def get_buffer(self) -> List[ProcessedSample]:
        return list(self._buffer)

    def _detach(self) -> Optional[_Segment]:
        if not self._buffer:
            return None

        samples, self._buffer = self._buffer, []
        if self._session_directory is None or self._queue is None:
            logger.warning(f"⚠ No session directory, {len(samples)} samples not written")
            return None

        self._segment_seq += 1
        segment = _Segment(
            segment_id=self._segment_seq,
            directory=self._session_directory,
            samples=samples,
            done=asyncio.get_running_loop().create_future(),
        )
        self._queue.put_nowait(segment)
        logger.debug(f"Segment {segment.segment_id} queued ({len(samples)} samples)")
        self._check_backlog()
        return segment

    def _check_backlog(self):
        pending = self._queue.qsize()
        if pending >= self.config.backlog_warning_segments and pending % self.config.backlog_warning_segments == 0:
            logger.warning(f"⚠ Storage is falling behind: {pending} write jobs pending")

    # ------------------------------------------------------------------
    # Writer task
    # ------------------------------------------------------------------

    async def _writer_loop(self):
        while True:
            job = await self._queue.get()
            if job is None:
                return

            self.state = WriterState.FLUSHING
            try:
                if isinstance(job, _Segment):
                    result = await self._write_segment(job)
                else:
                    result = await self._rewrite_window(job)
            except Exception as e:
                if not isinstance(e, PersistenceError):
                    logger.error(f"✗ Write job failed unexpectedly: {e}", exc_info=True)
                if not job.done.done():
                    job.done.set_exception(e)
            else:
                if not job.done.done():
                    job.done.set_result(result)
            finally:
                if self._queue is not None and self._queue.empty():
                    self.state = WriterState.COLLECTING

    async def _write_segment(self, segment: _Segment) -> WriteResult:
        path = segment.directory / self.config.sensor_file_name
        rows = [sample.to_csv_row() for sample in segment.samples]
        max_attempts = self.config.write_max_attempts
        result = None

        for attempt in range(1, max_attempts + 1):
            try:
                written = await asyncio.to_thread(
                    self.storage.append_rows, path, rows, SENSOR_CSV_HEADER)
            except Exception as e:
                result = WriteResult(
                    success=False,
                    attempt=attempt,
                    error=f"{type(e).__name__}: {e}",
                    segment_id=segment.segment_id,
                )
                self.status.publish(result)
                logger.warning(
                    f"⚠ Segment {segment.segment_id} write failed "
                    f"(attempt {attempt}/{max_attempts}): {result.error}"
                )
                if attempt < max_attempts:
                    delay = self.config.write_backoff_s * self.config.write_backoff_multiplier ** (attempt - 1)
                    await asyncio.sleep(delay)
                continue

            self._total_rows_written += written
            self.consecutive_failed_flushes = 0
            result = WriteResult(
                success=True,
                attempt=attempt,
                rows_written=written,
                segment_id=segment.segment_id,
            )
            self.status.publish(result)
            logger.debug(f"Segment {segment.segment_id}: {written} rows written (attempt {attempt})")
            return result

        self._on_segment_dropped(segment, path, result.error)
        return result

    def _on_segment_dropped(self, segment: _Segment, path: Path, error: Optional[str]):
        self._rows_dropped += len(segment.samples)
        self.consecutive_failed_flushes += 1

        message = (
            f"Failed to write {len(segment.samples)} samples to {path} "
            f"after {self.config.write_max_attempts} attempts: {error}"
        )
        logger.error(f"✗ {message}")
        if self.is_persistently_failing():
            logger.error(
                f"✗ Storage failing persistently ({self.consecutive_failed_flushes} consecutive segments lost)"
            )

        if self._error_callback is not None:
            try:
                self._error_callback(message)
            except Exception as e:
                logger.error(f"Write error callback raised: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    async def annotate_window(
            self,
            start_ms: int,
            end_ms: int,
            is_bump: Optional[bool] = None,
            user_feedback: Optional[str] = None,
    ) -> int:
        """
        Update is_bump / user_feedback of every sample in [start_ms, end_ms].

        Buffered samples are replaced immediately. Rows already written (or
        queued for writing) are rewritten on disk after the pending segments,
        through the writer queue.

        Args:
            start_ms:      Window start, session-relative ms (inclusive).
            end_ms:        Window end, session-relative ms (inclusive).
            is_bump:       New bump flag, None keeps the current value.
            user_feedback: New feedback text, None keeps the current value.

        Returns:
            Number of samples updated in the buffer and on disk.

        Raises:
            PersistenceError if the on-disk rewrite fails.
        """
        if is_bump is None and user_feedback is None:
            return 0

        updated = 0
        for i, sample in enumerate(self._buffer):
            if start_ms <= sample.relative_timestamp_ms <= end_ms:
                self._buffer[i] = sample.with_annotation(is_bump=is_bump, user_feedback=user_feedback)
                updated += 1

        if self._session_directory is None:
            return updated

        job = _Rewrite(
            directory=self._session_directory,
            start_ms=start_ms,
            end_ms=end_ms,
            is_bump=is_bump,
            user_feedback=user_feedback,
            done=asyncio.get_running_loop().create_future(),
        )
        if self._queue is not None:
            self._queue.put_nowait(job)
            self._check_backlog()
            updated += await asyncio.shield(job.done)
        else:
            updated += await self._rewrite_window(job)

        logger.info(f"Annotated {updated} samples in [{start_ms}, {end_ms}] ms")
        return updated

    async def _rewrite_window(self, job: _Rewrite) -> int:
        path = job.directory / self.config.sensor_file_name
        try:
            return await asyncio.to_thread(self._rewrite_rows, path, job)
        except Exception as e:
            logger.error(f"✗ Failed to update annotations in {path}: {e}", exc_info=True)
            raise PersistenceError(f"Annotation update failed for {path}: {e}") from e

    def _rewrite_rows(self, path: Path, job: _Rewrite) -> int:
        if not self.storage.exists(path):
            return 0

        rows = self.storage.read_rows(path)
        updated = 0
        for row in rows:
            try:
                timestamp = int(row[0])
            except (IndexError, ValueError):
                continue
            if not job.start_ms <= timestamp <= job.end_ms or len(row) < len(SENSOR_CSV_HEADER):
                continue
            if job.is_bump is not None:
                row[IS_BUMP_COLUMN] = '1' if job.is_bump else ''
            if job.user_feedback is not None:
                row[USER_FEEDBACK_COLUMN] = job.user_feedback
            updated += 1

        if updated:
            self.storage.write_rows(path, rows, SENSOR_CSV_HEADER)
        return updated

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def get_total_rows_written(self) -> int:
        return self._total_rows_written

    def get_total_processed_samples(self) -> int:
        return self._total_processed

    def get_rows_dropped(self) -> int:
        return self._rows_dropped

    def is_persistently_failing(self) -> bool:
        return self.consecutive_failed_flushes >= self.config.persistent_failure_threshold

    def calculate_actual_sampling_rate_hz(self) -> Optional[float]:
        """
        Samples per second over the sealed session window.

        Returns:
            None until the session's clock anchor is sealed.
        """
        if self._anchor is None:
            return None
        return self._anchor.sampling_rate_hz(self._total_processed)

    def get_status(self) -> dict:
        return {
            'state': self.state.value,
            'session_directory': str(self._session_directory) if self._session_directory else None,
            'buffered_samples': len(self._buffer),
            'pending_jobs': self._queue.qsize() if self._queue is not None else 0,
            'total_processed_samples': self._total_processed,
            'total_rows_written': self._total_rows_written,
            'rows_dropped': self._rows_dropped,
            'consecutive_failed_flushes': self.consecutive_failed_flushes,
            'persistently_failing': self.is_persistently_failing(),
        }

    def __repr__(self):
        return f"<BufferedSampleWriter(state={self.state.value}, written={self._total_rows_written})>"

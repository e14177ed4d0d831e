"""Background capture service driving the engine on a worker thread."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from ..config import AcquisitionConfig
from ..device.session import DeviceSession
from ..errors import CaptureCancelledError, CaptureInProgressError, LogicSnifferError
from .engine import AcquisitionEngine
from .reconstruct import CaptureResult

logger = logging.getLogger(__name__)


class CaptureCallback(Protocol):
    """Receives capture events; all methods are called from the worker thread."""

    def update_progress(self, percent: int) -> None:  # pragma: no cover - protocol signature
        ...

    def capture_complete(self, result: CaptureResult) -> None:  # pragma: no cover - protocol signature
        ...

    def capture_aborted(self, reason: str) -> None:  # pragma: no cover - protocol signature
        ...

    def capture_cancelled(self) -> None:  # pragma: no cover - protocol signature
        ...


@dataclass(slots=True)
class CaptureStats:
    captures: int = 0
    completed: int = 0
    aborted: int = 0
    cancelled: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


class CaptureService:
    """Run one capture at a time for a :class:`DeviceSession`."""

    def __init__(self, session: DeviceSession, callback: Optional[CaptureCallback] = None) -> None:
        self._session = session
        self._callback = callback
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._engine: Optional[AcquisitionEngine] = None
        self._last_config: Optional[AcquisitionConfig] = None
        self._last_result: Optional[CaptureResult] = None
        self._stats = CaptureStats()

    @property
    def stats(self) -> CaptureStats:
        return self._stats

    @property
    def last_result(self) -> Optional[CaptureResult]:
        return self._last_result

    @property
    def is_capturing(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start_capture(self, config: AcquisitionConfig) -> None:
        """Start capturing with a snapshot of *config*; returns immediately."""

        with self._lock:
            if self.is_capturing:
                raise CaptureInProgressError("A capture is already in progress")
            engine = AcquisitionEngine(self._session, config)
            self._engine = engine
            self._last_config = engine.config
            self._stats.captures += 1
            self._stats.last_started_at = datetime.now(timezone.utc)
            self._thread = threading.Thread(
                target=self._run,
                args=(engine,),
                name='capture-worker',
                daemon=True,
            )
            self._thread.start()

    def repeat_capture(self) -> None:
        """Capture again with the settings of the previous run."""

        if self._last_config is None:
            raise RuntimeError("No previous capture to repeat")
        self.start_capture(self._last_config)

    def cancel(self) -> None:
        engine = self._engine
        if engine is not None and self.is_capturing:
            logger.info("Cancelling capture")
            engine.stop()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker; ``True`` once no capture is running."""

        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _run(self, engine: AcquisitionEngine) -> None:
        callback = self._callback
        progress = callback.update_progress if callback is not None else None
        stats = self._stats
        try:
            result = engine.run(progress)
        except CaptureCancelledError:
            stats.cancelled += 1
            logger.info("Capture cancelled")
            if callback is not None:
                callback.capture_cancelled()
        except LogicSnifferError as exc:
            stats.aborted += 1
            stats.last_error = str(exc)
            logger.warning("Capture aborted: %s", exc)
            if callback is not None:
                callback.capture_aborted(str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            stats.aborted += 1
            stats.last_error = str(exc)
            logger.exception("Capture failed unexpectedly")
            if callback is not None:
                callback.capture_aborted(str(exc))
        else:
            stats.completed += 1
            stats.last_error = None
            self._last_result = result
            logger.info("Capture complete: %d samples", len(result))
            if callback is not None:
                callback.capture_complete(result)
        finally:
            stats.last_finished_at = datetime.now(timezone.utc)

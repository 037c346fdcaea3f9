"""
Compose Worker - Qt Integration for Desktop Hosts
=================================================

Runs composition runs on QThreads so a Qt host stays responsive while
images are fetched, watermarked and encoded.

RECENCY GUARANTEE:
------------------
Every request handed to ComposeManager gets a generation number. Worker
results travel back to the GUI thread through queued signals; the manager
only forwards a result whose generation is still the newest one. A slow
worker for an old request may finish last, but its result is dropped and
never reaches ``composition_ready``.

DEBOUNCE:
---------
Slider drags and typing produce bursts of changes. ComposeDebouncer waits
for the input to settle and forwards only the last request in the window.
"""

import asyncio
import logging
from dataclasses import astuple, dataclass, field
from typing import Dict, Optional, Set, Tuple

from PyQt6.QtCore import QMutex, QMutexLocker, QObject, QThread, QTimer, pyqtSignal

from socialmark.core.config import CompositorConfig
from socialmark.core.decoder import ImageDecoder, ImageReference, reference_id
from socialmark.core.errors import CompositionError
from socialmark.core.models import SourceImage, WatermarkSpec
from socialmark.core.pipeline import compose

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ComposeRequest:
    """One set of inputs for a composition run."""
    image_ref: ImageReference
    spec: WatermarkSpec = field(default_factory=WatermarkSpec)
    config: CompositorConfig = field(default_factory=CompositorConfig)


# =============================================================================
# DECODED SOURCE CACHE (owned by a ComposeManager, shared with its workers)
# =============================================================================

MAX_SOURCE_CACHE_SIZE = 10


class SourceCache:
    """
    Maps reference id -> SourceImage behind a QMutex.

    SourceImage pixels are read-only, so the same instance can be handed to
    several workers at once.
    """

    def __init__(self, max_size: int = MAX_SOURCE_CACHE_SIZE):
        self._entries: Dict[str, SourceImage] = {}
        self._lock = QMutex()
        self._max_size = max(1, max_size)

    def __len__(self) -> int:
        with QMutexLocker(self._lock):
            return len(self._entries)

    def get_or_decode(self, image_ref: ImageReference, decoder: ImageDecoder) -> SourceImage:
        cache_key = reference_id(image_ref)

        with QMutexLocker(self._lock):
            if cache_key in self._entries:
                return self._entries[cache_key]

        # Each worker thread drives its own short-lived event loop for the fetch
        source = asyncio.run(decoder.decode(image_ref))

        with QMutexLocker(self._lock):
            if len(self._entries) >= self._max_size:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
            self._entries[cache_key] = source

        return source

    def clear(self):
        """Forget decoded sources (call when the generated images change)."""
        with QMutexLocker(self._lock):
            self._entries.clear()


# =============================================================================
# COMPOSE WORKER
# =============================================================================

class ComposeWorker(QThread):
    """
    Worker thread performing one decode -> compose run.

    SIGNALS:
    - composed(int, CompositedImage): emitted on success
    - failed(int, CompositionError): emitted on a compositing failure

    Cancellation is cooperative: a cancelled worker stops at the next
    check point and emits nothing.
    """

    composed = pyqtSignal(int, object)
    failed = pyqtSignal(int, object)

    def __init__(
            self,
            request: ComposeRequest,
            generation: int = 0,
            source_cache: Optional[SourceCache] = None,
            parent=None
    ):
        super().__init__(parent)
        self.request = request
        self.generation = generation
        self._source_cache = source_cache if source_cache is not None else SourceCache()
        self._is_cancelled = False

    def cancel(self):
        """Request cancellation of this worker."""
        self._is_cancelled = True

    def run(self):
        try:
            if self._is_cancelled:
                return

            decoder = ImageDecoder(timeout=self.request.config.fetch_timeout)
            source = self._source_cache.get_or_decode(self.request.image_ref, decoder)

            if self._is_cancelled:
                return

            result = compose(source, self.request.spec, config=self.request.config)

            if self._is_cancelled:
                return

            self.composed.emit(self.generation, result)

        except CompositionError as exc:
            if not self._is_cancelled:
                logger.warning(
                    "compose_worker_failed: %s",
                    exc.detail,
                    extra={"generation": self.generation, "kind": exc.kind.value},
                )
                self.failed.emit(self.generation, exc)


# =============================================================================
# DEBOUNCER
# =============================================================================

class ComposeDebouncer(QObject):
    """
    Collapses rapid requests into the last one after ``delay_ms``.
    """

    compose_requested = pyqtSignal(object)

    def __init__(self, delay_ms: int = 50, parent=None):
        super().__init__(parent)
        self._delay_ms = delay_ms
        self._timer = QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._on_timeout)
        self._pending_request: Optional[ComposeRequest] = None
        self._mutex = QMutex()

    def request_compose(self, request: ComposeRequest):
        with QMutexLocker(self._mutex):
            self._pending_request = request
            # Reset the timer on each new request
            self._timer.stop()
            self._timer.start(self._delay_ms)

    def cancel(self):
        with QMutexLocker(self._mutex):
            self._timer.stop()
            self._pending_request = None

    def _on_timeout(self):
        with QMutexLocker(self._mutex):
            request, self._pending_request = self._pending_request, None
        if request is not None:
            self.compose_requested.emit(request)


# =============================================================================
# COMPOSE MANAGER
# =============================================================================

class ComposeManager(QObject):
    """
    High-level controller for composition in a Qt application.

    RESPONSIBILITIES:
    1. Debounce incoming requests (via ComposeDebouncer)
    2. Number each started run with a generation
    3. Forward only the newest generation's result or error
    4. Keep running workers alive until they finish

    USAGE:
        manager = ComposeManager(debounce_ms=50)
        manager.composition_ready.connect(on_processed)
        manager.request_compose(ComposeRequest(url, WatermarkSpec("@Brand")))
    """

    composition_ready = pyqtSignal(str)  # data URI
    result_ready = pyqtSignal(object)  # CompositedImage
    composition_failed = pyqtSignal(str, str)  # kind, detail
    composition_started = pyqtSignal()
    all_finished = pyqtSignal()

    def __init__(self, debounce_ms: int = 50, parent=None):
        super().__init__(parent)

        self._debouncer = ComposeDebouncer(debounce_ms, self)
        self._debouncer.compose_requested.connect(self.compose_now)

        self._generation = 0
        self._last_request: Optional[Tuple] = None
        self._workers: Set[ComposeWorker] = set()
        self._source_cache = SourceCache()

    @property
    def generation(self) -> int:
        return self._generation

    def request_compose(self, request: ComposeRequest):
        """Request a composition; rapid successive calls are collapsed."""
        self._debouncer.request_compose(request)

    def compose_now(self, request: ComposeRequest):
        """
        Start a composition immediately, superseding every earlier one.

        Repeating the newest inputs is a no-op.
        """
        config = request.config
        key = (
            reference_id(request.image_ref),
            request.spec,
            config.output_format,
            config.jpeg_quality,
            astuple(config.style),
        )
        if key == self._last_request:
            return
        self._last_request = key

        self._generation += 1
        for worker in self._workers:
            worker.cancel()

        self.composition_started.emit()

        worker = ComposeWorker(request, self._generation, self._source_cache)
        worker.composed.connect(self._on_composed)
        worker.failed.connect(self._on_failed)
        worker.finished.connect(lambda w=worker: self._on_worker_finished(w))
        self._workers.add(worker)
        worker.start()

    def cancel(self):
        """Drop pending and in-progress work; nothing further is published."""
        self._debouncer.cancel()
        self._generation += 1
        self._last_request = None
        for worker in self._workers:
            worker.cancel()

    @property
    def source_cache(self) -> SourceCache:
        return self._source_cache

    def clear_cache(self):
        self._source_cache.clear()

    def _on_composed(self, generation: int, result):
        if generation != self._generation:
            logger.info("stale_run_dropped", extra={"generation": generation})
            return
        self.result_ready.emit(result)
        self.composition_ready.emit(result.data_uri)

    def _on_failed(self, generation: int, error: CompositionError):
        if generation != self._generation:
            return
        self.composition_failed.emit(error.kind.value, error.detail)

    def _on_worker_finished(self, worker: ComposeWorker):
        self._workers.discard(worker)
        worker.deleteLater()
        if not self._workers:
            self.all_finished.emit()

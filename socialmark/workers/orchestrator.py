"""
Compositing Orchestrator
========================
Drives decode -> blend -> encode whenever the image reference or the
watermark spec changes, and publishes the newest result to a sink.

STATE MACHINE:
    IDLE -> DECODING -> BLENDING -> ENCODING -> PUBLISHED
    any non-idle state -> ERROR
    A spec-only change on an already decoded reference starts at BLENDING.

RECENCY:
Every distinct input combination bumps a generation counter. Each stage is
an await point; after it a run checks whether its generation is still the
newest and, if not, silently discards its work. A slower, older run can
therefore never overwrite a newer published result. There is no explicit
cancellation: superseded work runs to completion and is dropped.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Set, Tuple, Union

from socialmark.core.config import CompositorConfig
from socialmark.core.decoder import ImageDecoder, ImageReference, reference_id
from socialmark.core.errors import CompositionError
from socialmark.core.models import CompositedImage, ImageFormat, SourceImage, WatermarkSpec
from socialmark.core.pipeline import apply_watermark, encode_result, watermarker_for

logger = logging.getLogger(__name__)


class CompositionState(str, Enum):
    IDLE = "idle"
    DECODING = "decoding"
    BLENDING = "blending"
    ENCODING = "encoding"
    PUBLISHED = "published"
    ERROR = "error"


class CompositingOrchestrator:
    """
    Recomposes on input changes and publishes results in input order.

    USAGE:
        orchestrator = CompositingOrchestrator(sink=on_processed)
        await orchestrator.update(image_url, WatermarkSpec("@Brand", 0.6, True))

    The sink receives the ``data:`` URI of each published CompositedImage,
    exactly once per published run.
    """

    def __init__(
            self,
            sink: Callable[[str], None],
            decoder: Optional[ImageDecoder] = None,
            config: Optional[CompositorConfig] = None,
            on_error: Optional[Callable[[CompositionError], None]] = None
    ):
        self._sink = sink
        self._config = config or CompositorConfig()
        self._decoder = decoder or ImageDecoder(timeout=self._config.fetch_timeout)
        self._on_error = on_error
        self._watermarker = watermarker_for(self._config.style)

        self._generation = 0
        self._latest_inputs: Optional[Tuple[str, WatermarkSpec, str]] = None
        self._decoded: Optional[Tuple[str, SourceImage]] = None
        self._tasks: Set[asyncio.Task] = set()

        self.state = CompositionState.IDLE
        self.last_error: Optional[CompositionError] = None
        self.last_result: Optional[CompositedImage] = None

    @property
    def generation(self) -> int:
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _enter(self, state: CompositionState, generation: int):
        if self._is_current(generation):
            self.state = state
            logger.debug("composition_state", extra={"generation": generation, "state": state.value})

    def _cached_source(self, source_id: str) -> Optional[SourceImage]:
        if self._decoded is not None and self._decoded[0] == source_id:
            return self._decoded[1]
        return None

    def submit(
            self,
            image_ref: ImageReference,
            spec: WatermarkSpec,
            fmt: Optional[Union[ImageFormat, str]] = None
    ) -> asyncio.Task:
        """
        Notify the orchestrator of new inputs without waiting for the result.

        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self.update(image_ref, spec, fmt))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait until every submitted run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def update(
            self,
            image_ref: ImageReference,
            spec: WatermarkSpec,
            fmt: Optional[Union[ImageFormat, str]] = None
    ) -> Optional[CompositedImage]:
        """
        Run one composition for the given inputs.

        Returns:
            The published CompositedImage, or None if the inputs repeat the
            latest ones, the run was superseded, or it failed.
        """
        source_id = reference_id(image_ref)
        fmt_value = fmt if fmt is not None else self._config.output_format
        fmt_key = fmt_value.value if isinstance(fmt_value, ImageFormat) else str(fmt_value).lower()
        inputs = (source_id, spec, fmt_key)

        if inputs == self._latest_inputs:
            logger.debug("composition_unchanged", extra={"source_id": source_id})
            return None

        self._latest_inputs = inputs
        self._generation += 1
        generation = self._generation

        try:
            result = await self._run(generation, image_ref, source_id, spec, fmt_value)
        except CompositionError as exc:
            if not self._is_current(generation):
                logger.info("stale_run_dropped", extra={"generation": generation, "kind": exc.kind.value})
                return None
            self.state = CompositionState.ERROR
            self.last_error = exc
            logger.warning(
                "composition_failed: %s",
                exc.detail,
                extra={"generation": generation, "kind": exc.kind.value, "source_id": source_id},
            )
            if self._on_error is not None:
                self._on_error(exc)
            return None

        if result is None:
            logger.info("stale_run_dropped", extra={"generation": generation})
            return None

        self.state = CompositionState.PUBLISHED
        self.last_error = None
        self.last_result = result
        logger.info(
            "composition_published",
            extra={"generation": generation, "source_id": source_id, "format": result.encoding.value},
        )
        self._sink(result.data_uri)
        return result

    async def _run(
            self,
            generation: int,
            image_ref: ImageReference,
            source_id: str,
            spec: WatermarkSpec,
            fmt_value: Union[ImageFormat, str]
    ) -> Optional[CompositedImage]:
        """Execute the stages; returns None as soon as the run is superseded."""
        source = self._cached_source(source_id)
        if source is None:
            self._enter(CompositionState.DECODING, generation)
            source = await self._decoder.decode(image_ref)
            if not self._is_current(generation):
                return None
            self._decoded = (source_id, source)

        self._enter(CompositionState.BLENDING, generation)
        if spec.enabled:
            pixels = await asyncio.to_thread(
                apply_watermark, source, spec, self._config.style, self._watermarker
            )
        else:
            # Watermark disabled: encode the source pixels untouched
            pixels = source.pixels.copy()
            await asyncio.sleep(0)
        if not self._is_current(generation):
            return None

        self._enter(CompositionState.ENCODING, generation)
        fmt = ImageFormat.from_value(fmt_value)
        result = await asyncio.to_thread(
            encode_result, pixels, source, spec, fmt, self._config.jpeg_quality
        )
        if not self._is_current(generation):
            return None
        return result

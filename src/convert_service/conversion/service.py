import asyncio
import logging
import threading
from typing import Mapping, Optional

from .errors import CodecFailure, ConversionError, ValidationError
from .interfaces import (
    ArtifactStoreGateway,
    CodecGateway,
    ConversionOptions,
    ConversionResult,
    ProgressEvent,
    ProgressGateway,
)

logger = logging.getLogger(__name__)


class MediaKind:
    IMAGE = "image"
    PDF = "pdf"


# kind -> (first message, start of the codec band, width of the codec band / 100)
_STAGES: dict[str, tuple[str, float, float]] = {
    MediaKind.IMAGE: ("Analyzing image...", 30.0, 0.6),
    MediaKind.PDF: ("Analyzing PDF...", 20.0, 0.7),
}


def compression_ratio(original_size: int, result_size: int) -> str:
    """Saved fraction as a percent string, e.g. ``"42.5%"``; negative when the file grew."""
    ratio = (original_size - result_size) / original_size * 100
    return f"{ratio:.1f}%"


class _JobProgress:
    """Progress reporter for one job.

    Keeps the reported percent from moving backwards while the job is
    running; once the job has finished nothing more is published.
    """

    def __init__(self, sink: ProgressGateway) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._percent = 0.0
        self._done = False

    def report(self, percent: float, message: str) -> None:
        with self._lock:
            if self._done:
                return
            self._percent = max(self._percent, min(float(percent), 100.0))
            event = ProgressEvent(percent=round(self._percent, 1), message=message)
            self._sink.publish(event)

    def finish(self, message: str) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            self._sink.publish(ProgressEvent(percent=100.0, message=message))

    def fail(self, message: str, error: str) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
            self._sink.publish(ProgressEvent(percent=0.0, message=message, error=error))


class ConversionService:
    """Core domain service orchestrating conversion jobs.

    This service is framework-agnostic. It runs the blocking codec in a
    worker thread, relays codec progress through the broadcaster and keeps
    the result in the artifact store until the client downloads it.
    """

    def __init__(
        self,
        store: ArtifactStoreGateway,
        broadcaster: ProgressGateway,
        codecs: Mapping[str, CodecGateway],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._codecs = dict(codecs)
        self._timeout = timeout

    @property
    def store(self) -> ArtifactStoreGateway:
        return self._store

    def codec(self, kind: str) -> CodecGateway:
        if kind not in _STAGES or kind not in self._codecs:
            raise ValidationError(f"Unknown conversion kind: {kind}")
        return self._codecs[kind]

    async def run(self, source: bytes, options: ConversionOptions) -> ConversionResult:
        if not source:
            raise ValidationError("Empty file data")
        codec = self.codec(options.kind)
        first_message, band_start, band_width = _STAGES[options.kind]
        noun = "Compression" if options.kind == MediaKind.PDF else "Conversion"
        progress = _JobProgress(self._broadcaster)

        def relay(percent: float, message: str) -> None:
            progress.report(band_start + percent * band_width, message)

        original_size = len(source)
        logger.info(
            "%s started: %s -> %s, %d bytes, level=%s",
            noun.lower(), options.kind, options.output_format, original_size, options.compression_level,
        )
        try:
            progress.report(10, first_message)
            progress.report(band_start, "Starting conversion...")

            work = asyncio.to_thread(codec.convert, source, options, relay)
            if self._timeout:
                try:
                    converted = await asyncio.wait_for(work, self._timeout)
                except asyncio.TimeoutError:
                    raise CodecFailure(f"{noun} timed out after {self._timeout:g}s") from None
            else:
                converted = await work

            progress.report(90, "Preparing download...")
            content_type = codec.content_type(options.output_format)
            identifier = self._store.put(converted, content_type, codec.display_name(options.output_format))
        except ConversionError as e:
            logger.warning("%s failed: %s", noun.lower(), e.message)
            progress.fail(f"{noun} failed", e.message)
            raise
        except Exception as e:
            logger.exception("%s failed", noun.lower())
            progress.fail(f"{noun} failed", str(e) or e.__class__.__name__)
            raise CodecFailure(f"{noun} failed: {e}") from e

        result_size = len(converted)
        progress.finish(f"{noun} completed!")
        return ConversionResult(
            identifier=identifier,
            original_size=original_size,
            result_size=result_size,
            ratio=compression_ratio(original_size, result_size),
            output_format=options.output_format,
            content_type=content_type,
        )

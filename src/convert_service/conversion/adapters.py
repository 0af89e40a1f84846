import io
import logging
from typing import Optional

from .errors import CodecFailure, UnsupportedFormatError
from .interfaces import CodecGateway, ConversionOptions, ProgressCallback

logger = logging.getLogger(__name__)

IMAGE_INPUT_FORMATS = ("jpeg", "jpg", "png", "webp", "bmp", "gif", "tiff", "heic")
IMAGE_OUTPUT_FORMATS = ("jpeg", "jpg", "png", "webp", "bmp", "gif", "tiff")

IMAGE_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "gif": "image/gif",
    "tiff": "image/tiff",
}

# Pillow's name for each output format
_PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "bmp": "BMP",
    "gif": "GIF",
    "tiff": "TIFF",
}

# container names Pillow reports for otherwise supported inputs
_INPUT_ALIASES = {"mpo": "jpeg", "heif": "heic"}

_JPEG = {
    "low": {"quality": 90, "progressive": True},
    "medium": {"quality": 75, "progressive": True},
    "high": {"quality": 60, "progressive": True, "optimize": True},
}

_IMAGE_SETTINGS: dict[str, dict[str, dict[str, object]]] = {
    "jpg": _JPEG,
    "jpeg": _JPEG,
    "png": {
        "low": {"compress_level": 3},
        "medium": {"compress_level": 6, "optimize": True},
        "high": {"compress_level": 9, "optimize": True, "palette": True},
    },
    "webp": {
        "low": {"quality": 90, "method": 2},
        "medium": {"quality": 75, "method": 4},
        "high": {"quality": 60, "method": 6, "lossless": False},
    },
    "tiff": {
        "low": {"compression": "tiff_lzw"},
        "medium": {"compression": "tiff_deflate"},
        "high": {"compression": "jpeg", "quality": 75},
    },
}

_PDF_SETTINGS: dict[str, dict[str, object]] = {
    "low": {"garbage": 1, "deflate": False, "clean": False},
    "medium": {"garbage": 3, "deflate": True, "clean": False},
    "high": {"garbage": 4, "deflate": True, "clean": True},
}


def _report(progress: Optional[ProgressCallback], percent: float, message: str) -> None:
    if progress:
        progress(percent, message)


def image_compression_settings(output_format: str, level: str) -> dict[str, object]:
    """Encoder keyword arguments for a format and compression level.

    Unknown levels fall back to medium; formats without tunables get ``{}``.
    """
    by_level = _IMAGE_SETTINGS.get(output_format.lower(), {})
    return dict(by_level.get(level) or by_level.get("medium") or {})


def pdf_compression_settings(level: str) -> dict[str, object]:
    return dict(_PDF_SETTINGS.get(level) or _PDF_SETTINGS["medium"])


class PillowImageCodec(CodecGateway):
    """Re-encode raster images with Pillow."""

    def supported_input_formats(self) -> list[str]:
        return list(IMAGE_INPUT_FORMATS)

    def supported_output_formats(self) -> list[str]:
        return list(IMAGE_OUTPUT_FORMATS)

    def can_convert(self, input_format: str, output_format: str) -> bool:
        return (
            input_format.lower() in IMAGE_INPUT_FORMATS
            and output_format.lower() in IMAGE_OUTPUT_FORMATS
        )

    def content_type(self, output_format: str) -> str:
        return IMAGE_MIME_TYPES.get(output_format.lower(), "application/octet-stream")

    def display_name(self, output_format: str) -> str:
        return f"converted_image.{output_format.lower()}"

    def convert(
        self,
        source: bytes,
        options: ConversionOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        from PIL import Image, UnidentifiedImageError

        output_format = options.output_format
        if output_format not in _PIL_FORMATS:
            raise UnsupportedFormatError(f"Unsupported output format: {output_format}")

        _report(progress, 10, "Initializing conversion...")
        try:
            image = Image.open(io.BytesIO(source))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise CodecFailure(f"Failed to convert image: {e}") from e

        input_format = (image.format or "").lower()
        input_format = _INPUT_ALIASES.get(input_format, input_format)
        if input_format and not self.can_convert(input_format, output_format):
            raise UnsupportedFormatError(f"Cannot convert {input_format} to {output_format}")

        settings = image_compression_settings(output_format, options.compression_level)
        _report(progress, 30, "Applying compression settings...")

        pil_format = _PIL_FORMATS[output_format]
        palette = bool(settings.pop("palette", False))
        image = self._prepare_mode(image, pil_format, palette, settings.get("compression"))

        _report(progress, 60, "Converting image...")
        out = io.BytesIO()
        try:
            image.save(out, format=pil_format, **settings)
        except (OSError, ValueError) as e:
            raise CodecFailure(f"Failed to convert image: {e}") from e

        _report(progress, 90, "Finalizing conversion...")
        data = out.getvalue()
        logger.info(
            "image converted from %s to %s: %d -> %d bytes",
            input_format or "unknown", output_format, len(source), len(data),
        )
        _report(progress, 100, "Conversion complete!")
        return data

    @staticmethod
    def _flatten_onto_white(image):
        from PIL import Image

        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background

    @classmethod
    def _prepare_mode(cls, image, pil_format: str, palette: bool, compression: object = None):
        has_alpha = image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info)
        if pil_format == "JPEG" or (pil_format == "TIFF" and compression == "jpeg"):
            if has_alpha:
                return cls._flatten_onto_white(image)
            if image.mode != "RGB" and not (pil_format == "JPEG" and image.mode in ("L", "CMYK")):
                return image.convert("RGB")
            return image
        if pil_format == "PNG" and palette and image.mode not in ("P", "1", "L"):
            return image.convert("RGBA").quantize(colors=256)
        if pil_format == "BMP":
            if has_alpha:
                return cls._flatten_onto_white(image)
            if image.mode not in ("1", "L", "P", "RGB"):
                return image.convert("RGB")
        if pil_format == "WEBP" and image.mode not in ("RGB", "RGBA"):
            return image.convert("RGBA" if "A" in image.getbands() or "transparency" in image.info else "RGB")
        return image


class PyMuPDFCodec(CodecGateway):
    """Rewrite PDFs through PyMuPDF, dropping unused objects and deflating streams."""

    def content_type(self, output_format: str) -> str:
        return "application/pdf"

    def display_name(self, output_format: str) -> str:
        return "compressed_document.pdf"

    def page_count(self, source: bytes) -> int:
        import fitz

        with fitz.open(stream=source, filetype="pdf") as doc:
            return doc.page_count

    def convert(
        self,
        source: bytes,
        options: ConversionOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        import fitz

        if options.output_format != "pdf":
            raise UnsupportedFormatError(f"Unsupported output format: {options.output_format}")

        _report(progress, 10, "Loading PDF document...")
        try:
            doc = fitz.open(stream=source, filetype="pdf")
        except Exception as e:
            raise CodecFailure(f"Failed to compress PDF: {e}") from e

        try:
            _report(progress, 30, "Analyzing document structure...")
            settings = pdf_compression_settings(options.compression_level)

            _report(progress, 50, "Applying compression...")
            total = doc.page_count
            for i, page in enumerate(doc):
                _report(progress, 50 + (i / total) * 40 if total else 50, f"Processing page {i + 1} of {total}...")
                if settings["clean"]:
                    page.clean_contents()

            _report(progress, 90, "Generating compressed PDF...")
            data = doc.tobytes(
                garbage=settings["garbage"],
                deflate=settings["deflate"],
                clean=settings["clean"],
            )
        except Exception as e:
            raise CodecFailure(f"Failed to compress PDF: {e}") from e
        finally:
            doc.close()

        logger.info("PDF compressed: %d -> %d bytes", len(source), len(data))
        _report(progress, 100, "Compression complete!")
        return data

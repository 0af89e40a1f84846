import base64
import binascii
import logging
import os
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile, WebSocket, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from convert_service import __version__
from convert_service.conversion import (
    ArtifactStore,
    ConversionError,
    ConversionOptions,
    ConversionService,
    MediaKind,
    ProgressBroadcaster,
    SizeLimitExceeded,
    UnsupportedFormatError,
    ValidationError,
)
from convert_service.conversion.adapters import PillowImageCodec, PyMuPDFCodec

logger = logging.getLogger(__name__)

app = FastAPI(
    title="File Conversion Service",
    version=os.getenv("CONVERT_SERVICE_VERSION", __version__),
    description=(
        "Convert and compress images and PDFs, with live progress over a "
        "WebSocket and short-lived download links."
    ),
)

# Global configuration defaults
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
IMAGE_MIME = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/bmp",
    "image/gif",
    "image/tiff",
    "image/heic",
}
PDF_MIME = {"application/pdf"}
ALLOWED_MIME = set(
    (os.getenv("ALLOWED_MIME", ",".join(sorted(IMAGE_MIME | PDF_MIME)))).split(",")
)
ARTIFACT_RETENTION_SEC = float(os.getenv("ARTIFACT_RETENTION_SEC", "600"))
DOWNLOAD_GRACE_SEC = float(os.getenv("DOWNLOAD_GRACE_SEC", "60"))
SWEEP_INTERVAL_SEC = float(os.getenv("SWEEP_INTERVAL_SEC", "60"))
JOB_TIMEOUT_SEC = float(os.getenv("JOB_TIMEOUT_SEC", "300"))
PROGRESS_BACKLOG = int(os.getenv("PROGRESS_BACKLOG", "100"))

IMAGE_CODEC = PillowImageCodec()
PDF_CODEC = PyMuPDFCodec()

STORE: ArtifactStore | None = None
BROADCASTER: ProgressBroadcaster | None = None
SERVICE: ConversionService | None = None


class ImageConversionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_data: Optional[str] = Field(default=None, alias="fileData", description="Base64 encoded image")
    output_format: Optional[str] = Field(default=None, alias="outputFormat", description="Target image format")
    compression_level: Optional[str] = Field(default=None, alias="compressionLevel", description="low, medium or high")


class PdfCompressionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_data: Optional[str] = Field(default=None, alias="fileData", description="Base64 encoded PDF")
    compression_level: Optional[str] = Field(default=None, alias="compressionLevel", description="low, medium or high")


def _decode_file_data(file_data: str) -> bytes:
    """Decode a base64 payload, tolerating a ``data:...;base64,`` prefix."""
    payload = file_data.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    # MIME-style payloads wrap at 76 columns
    payload = "".join(payload.split())
    # 4 base64 characters carry 3 bytes
    if len(payload) // 4 * 3 > MAX_UPLOAD_BYTES + 2:
        raise SizeLimitExceeded(f"File too large. Maximum size is {MAX_UPLOAD_MB}MB.")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("fileData is not valid base64") from None
    if not data:
        raise ValidationError("fileData is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise SizeLimitExceeded(f"File too large. Maximum size is {MAX_UPLOAD_MB}MB.")
    return data


def _service() -> ConversionService:
    global SERVICE
    assert SERVICE is not None
    return SERVICE


@app.exception_handler(ConversionError)
async def _conversion_error_handler(request, exc: ConversionError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.on_event("startup")
async def _startup() -> None:
    # Build the shared store and broadcaster once and hand them to the service
    global STORE, BROADCASTER, SERVICE
    STORE = ArtifactStore(
        retention_sec=ARTIFACT_RETENTION_SEC,
        grace_sec=DOWNLOAD_GRACE_SEC,
        sweep_interval=SWEEP_INTERVAL_SEC,
    )
    BROADCASTER = ProgressBroadcaster(backlog=PROGRESS_BACKLOG)
    SERVICE = ConversionService(
        store=STORE,
        broadcaster=BROADCASTER,
        codecs={MediaKind.IMAGE: IMAGE_CODEC, MediaKind.PDF: PDF_CODEC},
        timeout=JOB_TIMEOUT_SEC or None,
    )
    await STORE.start()
    logger.info("conversion service started (max upload %d MB)", MAX_UPLOAD_MB)


@app.on_event("shutdown")
async def _shutdown() -> None:
    global STORE, BROADCASTER
    if BROADCASTER is not None:
        await BROADCASTER.close()
    if STORE is not None:
        await STORE.stop()


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/api/upload/file")
async def upload_file(file: Optional[UploadFile] = File(None)) -> JSONResponse:
    """Accept a single image or PDF and report what the service sees.

    The upload is only inspected; conversion requests carry the file again
    as base64 so the service keeps no per-client state.
    """
    if file is None:
        raise ValidationError("No file uploaded")
    ct = (file.content_type or "").strip().lower()
    if ct not in ALLOWED_MIME:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=UnsupportedFormatError(
                f"Unsupported file type: {file.content_type}. Supported types: "
                "Images (jpg, jpeg, png, webp, bmp, gif, tiff, heic) and PDF files."
            ).to_detail(),
        )

    # Stream the upload so oversized files are rejected early
    size_bytes = 0
    chunks: list[bytes] = []
    CHUNK = 1024 * 1024
    while True:
        chunk = await file.read(CHUNK)
        if not chunk:
            break
        size_bytes += len(chunk)
        if size_bytes > MAX_UPLOAD_BYTES:
            raise SizeLimitExceeded(f"File too large. Maximum size is {MAX_UPLOAD_MB}MB.")
        chunks.append(chunk)

    is_pdf = ct in PDF_MIME
    file_info: dict[str, object] = {
        "originalName": file.filename,
        "mimeType": file.content_type,
        "size": size_bytes,
        "isImage": ct in IMAGE_MIME,
        "isPDF": is_pdf,
    }
    if is_pdf:
        try:
            file_info["pageCount"] = PDF_CODEC.page_count(b"".join(chunks))
        except Exception as e:
            logger.warning("could not read page count of %s: %s", file.filename, e)
            file_info["pageCount"] = 0

    logger.info("file uploaded: %s (%d bytes)", file.filename, size_bytes)
    return JSONResponse(
        content={"success": True, "message": "File uploaded successfully", "fileInfo": file_info}
    )


@app.get("/api/upload/formats")
def supported_formats() -> dict[str, object]:
    return {
        "supportedFormats": {"images": IMAGE_CODEC.supported_input_formats(), "pdf": ["pdf"]},
        # PDFs are only compressed, never converted to another format
        "outputFormats": {"images": IMAGE_CODEC.supported_output_formats(), "pdf": ["pdf"]},
        "maxFileSize": f"{MAX_UPLOAD_MB}MB",
    }


@app.post("/api/convert/image")
async def convert_image(body: ImageConversionRequest) -> JSONResponse:
    if not body.file_data or not body.output_format:
        raise ValidationError("Missing required parameters: fileData and outputFormat")
    output_format = body.output_format.strip().lower()
    if output_format not in IMAGE_CODEC.supported_output_formats():
        raise UnsupportedFormatError(f"Unsupported output format: {body.output_format}")
    source = _decode_file_data(body.file_data)

    options = ConversionOptions(
        kind=MediaKind.IMAGE,
        output_format=output_format,
        compression_level=body.compression_level or "medium",
    )
    result = await _service().run(source, options)
    return JSONResponse(
        content={
            "success": True,
            "message": "Image converted successfully",
            "downloadUrl": result.download_url,
            "outputFormat": result.output_format,
            "originalSize": result.original_size,
            "convertedSize": result.result_size,
            "compressionRatio": result.ratio,
        }
    )


@app.post("/api/convert/pdf")
async def compress_pdf(body: PdfCompressionRequest) -> JSONResponse:
    if not body.file_data:
        raise ValidationError("Missing required parameter: fileData")
    source = _decode_file_data(body.file_data)

    options = ConversionOptions(
        kind=MediaKind.PDF,
        output_format="pdf",
        compression_level=body.compression_level or "medium",
    )
    result = await _service().run(source, options)
    return JSONResponse(
        content={
            "success": True,
            "message": "PDF compressed successfully",
            "downloadUrl": result.download_url,
            "originalSize": result.original_size,
            "compressedSize": result.result_size,
            "compressionRatio": result.ratio,
        }
    )


@app.get("/api/convert/download/{identifier}")
def download(identifier: str) -> Response:
    """Serve a stored result; it stays fetchable for the grace period only."""
    store = _service().store
    record = store.get(identifier)
    store.schedule_delete(identifier)
    headers = {"Content-Disposition": f'attachment; filename="{record.display_name}"'}
    return Response(content=record.content, media_type=record.content_type, headers=headers)


@app.websocket("/ws")
async def progress_socket(websocket: WebSocket) -> None:
    """Push every conversion's progress events to the connected client."""
    global BROADCASTER
    assert BROADCASTER is not None
    listener = await BROADCASTER.connect(websocket)
    try:
        while True:
            # inbound frames, text or binary, carry nothing; reading detects the disconnect
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        BROADCASTER.disconnect(listener)


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("convert_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()

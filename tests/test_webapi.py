"""
HTTP and WebSocket tests against the FastAPI app.
"""

import base64
import textwrap

import pytest
from fastapi.testclient import TestClient

from convert_service import webapi


@pytest.fixture
def client():
    with TestClient(webapi.app) as c:
        yield c


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_upload_reports_file_info(client, small_png):
    resp = client.post("/api/upload/file", files={"file": ("pic.png", small_png, "image/png")})

    assert resp.status_code == 200
    info = resp.json()["fileInfo"]
    assert info == {
        "originalName": "pic.png",
        "mimeType": "image/png",
        "size": len(small_png),
        "isImage": True,
        "isPDF": False,
    }


def test_upload_pdf_includes_page_count(client, pdf_bytes):
    resp = client.post("/api/upload/file", files={"file": ("doc.pdf", pdf_bytes, "application/pdf")})
    assert resp.json()["fileInfo"]["pageCount"] == 4


def test_upload_rejects_unknown_type(client):
    resp = client.post("/api/upload/file", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert resp.status_code == 415
    assert resp.json()["detail"]["code"] == "unsupported_format"


def test_upload_without_file(client):
    resp = client.post("/api/upload/file")
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"code": "invalid_request", "message": "No file uploaded"}


def test_upload_size_ceiling(client, monkeypatch, small_png):
    monkeypatch.setattr(webapi, "MAX_UPLOAD_BYTES", 10)
    resp = client.post("/api/upload/file", files={"file": ("pic.png", small_png, "image/png")})
    assert resp.status_code == 413
    assert resp.json()["detail"]["code"] == "payload_too_large"


def test_formats(client):
    body = client.get("/api/upload/formats").json()
    assert "heic" in body["supportedFormats"]["images"]
    assert "heic" not in body["outputFormats"]["images"]
    assert body["maxFileSize"] == "50MB"


def test_convert_image_and_download(client, photo_png):
    resp = client.post(
        "/api/convert/image",
        json={"fileData": b64(photo_png), "outputFormat": "jpeg", "compressionLevel": "high"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["outputFormat"] == "jpeg"
    assert body["originalSize"] == len(photo_png)
    assert body["convertedSize"] < body["originalSize"]
    assert body["compressionRatio"].endswith("%")
    assert body["downloadUrl"].startswith("/api/convert/download/")

    download = client.get(body["downloadUrl"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "image/jpeg"
    assert download.headers["content-disposition"] == 'attachment; filename="converted_image.jpeg"'
    assert len(download.content) == body["convertedSize"]

    # still available during the grace period
    assert client.get(body["downloadUrl"]).status_code == 200


def test_download_unknown_identifier(client):
    resp = client.get("/api/convert/download/1700000000000-fabricated")
    assert resp.status_code == 404
    assert resp.json() == {"detail": {"code": "not_found", "message": "File not found or expired"}}


def test_convert_image_requires_fields(client):
    resp = client.post("/api/convert/image", json={"outputFormat": "png"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["message"] == "Missing required parameters: fileData and outputFormat"


def test_convert_image_rejects_unknown_output(client, small_png):
    resp = client.post("/api/convert/image", json={"fileData": b64(small_png), "outputFormat": "heic"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "unsupported_format"


def test_convert_image_rejects_bad_base64(client):
    resp = client.post("/api/convert/image", json={"fileData": "***not base64***", "outputFormat": "png"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_request"


def test_convert_image_accepts_data_url(client, small_png):
    data_url = "data:image/png;base64," + b64(small_png)
    resp = client.post("/api/convert/image", json={"fileData": data_url, "outputFormat": "webp"})
    assert resp.status_code == 200


def test_convert_image_accepts_line_wrapped_base64(client, small_png):
    wrapped = "\n".join(textwrap.wrap(b64(small_png), 76))
    resp = client.post("/api/convert/image", json={"fileData": wrapped, "outputFormat": "png"})
    assert resp.status_code == 200


def test_codec_failure_is_a_server_error(client):
    resp = client.post("/api/convert/image", json={"fileData": b64(b"not an image"), "outputFormat": "png"})
    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["code"] == "conversion_failed"
    assert "Traceback" not in detail["message"]


def test_compress_pdf(client, pdf_bytes):
    resp = client.post("/api/convert/pdf", json={"fileData": b64(pdf_bytes), "compressionLevel": "extreme"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["originalSize"] == len(pdf_bytes)
    assert body["compressedSize"] > 0
    download = client.get(body["downloadUrl"])
    assert download.headers["content-type"] == "application/pdf"
    assert download.content.startswith(b"%PDF")


def test_progress_is_broadcast_to_every_socket(client, small_png):
    with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
        resp = client.post("/api/convert/image", json={"fileData": b64(small_png), "outputFormat": "gif"})
        assert resp.status_code == 200

        for ws in (first, second):
            events = []
            while True:
                message = ws.receive_json()
                assert message["type"] == "progress"
                events.append(message["data"])
                if message["data"]["progress"] == 100:
                    break
            assert events[0] == {"progress": 10.0, "message": "Analyzing image..."}
            progress = [e["progress"] for e in events]
            assert progress == sorted(progress)


def test_failure_event_reaches_sockets(client):
    with client.websocket_connect("/ws") as ws:
        resp = client.post("/api/convert/pdf", json={"fileData": b64(b"not a pdf")})
        assert resp.status_code == 500

        while True:
            data = ws.receive_json()["data"]
            if "error" in data:
                break
        assert data["progress"] == 0
        assert data["error"]


def test_binary_frames_do_not_end_the_progress_stream(client, small_png):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"ping")
        ws.send_text("hello")
        resp = client.post("/api/convert/image", json={"fileData": b64(small_png), "outputFormat": "png"})
        assert resp.status_code == 200

        while True:
            data = ws.receive_json()["data"]
            if data["progress"] == 100:
                break
        assert data["message"] == "Conversion completed!"

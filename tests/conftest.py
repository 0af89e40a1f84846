import io

import pytest
from PIL import Image


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_photo_png(size: int = 1000) -> bytes:
    """Noisy RGB image that PNG compresses poorly and JPEG handles well."""
    red = Image.effect_noise((size, size), 48)
    green = Image.linear_gradient("L").resize((size, size))
    blue = Image.effect_noise((size, size), 24)
    image = Image.merge("RGB", (red, green, blue))
    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


def make_small_png(mode: str = "RGBA") -> bytes:
    image = Image.new(mode, (32, 24), (200, 40, 40, 128) if mode == "RGBA" else (200, 40, 40))
    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


def make_pdf(pages: int = 4) -> bytes:
    import fitz

    doc = fitz.open()
    for n in range(pages):
        page = doc.new_page()
        for line in range(40):
            page.insert_text((72, 60 + line * 18), f"Page {n + 1}, line {line + 1}: the quick brown fox jumps")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture(scope="session")
def photo_png() -> bytes:
    return make_photo_png()


@pytest.fixture
def small_png() -> bytes:
    return make_small_png()


@pytest.fixture(scope="session")
def pdf_bytes() -> bytes:
    return make_pdf()

from dataclasses import dataclass
from typing import Callable, Optional, Protocol


ProgressCallback = Callable[[float, str], None]

COMPRESSION_LEVELS = ("low", "medium", "high")
DEFAULT_COMPRESSION_LEVEL = "medium"


def normalize_level(level: Optional[str]) -> str:
    """Map any unrecognised compression level onto the default one."""
    value = (level or "").strip().lower()
    return value if value in COMPRESSION_LEVELS else DEFAULT_COMPRESSION_LEVEL


@dataclass(frozen=True)
class ProgressEvent:
    percent: float
    message: str
    error: Optional[str] = None

    def to_message(self) -> dict[str, object]:
        data: dict[str, object] = {"progress": self.percent, "message": self.message}
        if self.error is not None:
            data["error"] = self.error
        return {"type": "progress", "data": data}


@dataclass(frozen=True)
class ArtifactRecord:
    identifier: str
    content: bytes
    content_type: str
    display_name: str
    created_at: float


@dataclass(frozen=True)
class ConversionOptions:
    kind: str  # "image" or "pdf"
    output_format: str = "pdf"
    compression_level: str = DEFAULT_COMPRESSION_LEVEL

    def __post_init__(self) -> None:
        object.__setattr__(self, "output_format", self.output_format.strip().lower())
        object.__setattr__(self, "compression_level", normalize_level(self.compression_level))


@dataclass(frozen=True)
class ConversionResult:
    identifier: str
    original_size: int
    result_size: int
    ratio: str
    output_format: str
    content_type: str

    @property
    def download_url(self) -> str:
        return f"/api/convert/download/{self.identifier}"


class CodecGateway(Protocol):
    def convert(
        self,
        source: bytes,
        options: ConversionOptions,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """Transform the source buffer and return the encoded result.
        This is a blocking call; callers should offload to threads if needed.
        """

    def content_type(self, output_format: str) -> str:
        ...

    def display_name(self, output_format: str) -> str:
        ...


class ArtifactStoreGateway(Protocol):
    def put(self, content: bytes, content_type: str, display_name: str) -> str:
        ...

    def get(self, identifier: str) -> ArtifactRecord:
        ...

    def schedule_delete(self, identifier: str, delay: Optional[float] = None) -> None:
        ...

    def sweep(self) -> int:
        ...


class ProgressGateway(Protocol):
    def publish(self, event: ProgressEvent) -> None:
        """Deliver the event to every connected listener without blocking."""

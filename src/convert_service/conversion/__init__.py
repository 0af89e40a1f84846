"""
Domain layer for file conversion.
Provides interfaces (gateways), the artifact store, the progress broadcaster
and a service to orchestrate conversion jobs, so front-ends (HTTP or others)
can use the same core logic.
"""

from .interfaces import (
    ArtifactRecord,
    CodecGateway,
    ConversionOptions,
    ConversionResult,
    ProgressEvent,
    normalize_level,
)
from .errors import (
    CodecFailure,
    ConversionError,
    NotFoundError,
    SizeLimitExceeded,
    UnsupportedFormatError,
    ValidationError,
)
from .broadcast import ProgressBroadcaster
from .store import ArtifactStore
from .service import ConversionService, MediaKind, compression_ratio

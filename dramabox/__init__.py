from .config import Settings
from .errors import (
    DramaboxError,
    InvalidTokenResponse,
    MalformedResponse,
    NotFound,
    TokenAcquisitionFailed,
    TransportError,
    UpstreamRejected,
    UpstreamStatusError,
    ValidationError,
)
from .models import BestEffort, ChapterRecord
from .service import Dramabox, DramaboxContext

__all__ = [
    "BestEffort",
    "ChapterRecord",
    "Dramabox",
    "DramaboxContext",
    "DramaboxError",
    "InvalidTokenResponse",
    "MalformedResponse",
    "NotFound",
    "Settings",
    "TokenAcquisitionFailed",
    "TransportError",
    "UpstreamRejected",
    "UpstreamStatusError",
    "ValidationError",
]

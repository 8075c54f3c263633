from ingest.schemas.files import ErrorRecord, FileRecord, PendingMetadata
from ingest.schemas.uploads import (
    CallbackFile,
    CallbackPayload,
    CallbackResultRequest,
    RouteMetadataRequest,
    StreamPart,
    UploadPutResult,
)

__all__ = [
    "FileRecord",
    "PendingMetadata",
    "ErrorRecord",
    "UploadPutResult",
    "CallbackFile",
    "CallbackPayload",
    "StreamPart",
    "RouteMetadataRequest",
    "CallbackResultRequest",
]

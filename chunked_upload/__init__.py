from .scheduler import ChunkScheduler, ChunkSettled, exponential_backoff
from .session import UploadSession
from .tasks import ChunkStatus, ChunkTask, ChunkTaskStore, SessionPhase, SessionState
from .transport import ChunkTransport, ChunkUpload, UploadCancelled, is_cancellation

__all__ = [
    "ChunkScheduler",
    "ChunkSettled",
    "ChunkStatus",
    "ChunkTask",
    "ChunkTaskStore",
    "ChunkTransport",
    "ChunkUpload",
    "SessionPhase",
    "SessionState",
    "UploadCancelled",
    "UploadSession",
    "exponential_backoff",
    "is_cancellation",
]

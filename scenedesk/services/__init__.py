from .processors import JobInput, ProcessorRegistry, VideoProcessor, default_registry
from .record_store import RecordStore
from .storage import ObjectStream, StorageService

__all__ = [
    "JobInput",
    "ProcessorRegistry",
    "VideoProcessor",
    "default_registry",
    "RecordStore",
    "ObjectStream",
    "StorageService",
]

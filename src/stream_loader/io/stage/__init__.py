"""Staging transports used by the stream loader."""

from .transport import LocalDirectoryStage, MemoryStage, StageTransport

__all__ = ["LocalDirectoryStage", "MemoryStage", "StageTransport"]

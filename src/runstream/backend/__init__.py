"""Reference execution backend."""

from runstream.backend.executor import ChunkKind, ExecutionChunk, Executor, OutputChunker, SubprocessExecutor
from runstream.backend.server import RunServer

__all__ = [
    "ChunkKind",
    "ExecutionChunk",
    "Executor",
    "OutputChunker",
    "RunServer",
    "SubprocessExecutor",
]

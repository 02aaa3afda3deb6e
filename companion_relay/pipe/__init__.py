from .chunker import chunk_text
from .destinations import ConsoleSender, Destination, sanitize_line
from .dispatcher import ChatPipe, ChunkBudget, PipeState

__all__ = ["ChatPipe", "ChunkBudget", "ConsoleSender", "Destination", "PipeState", "chunk_text", "sanitize_line"]

from .pipeline import BuildPipeline
from .relay import ChunkDecoder, format_frame
from .transform import WireFrameTransformer

__all__ = ["BuildPipeline", "ChunkDecoder", "WireFrameTransformer", "format_frame"]

"""Line-framed JSON transport shared by both backends."""

from agentbridge.transport.channel import JsonLineChannel, LineDecoder, decode_document

__all__ = ["JsonLineChannel", "LineDecoder", "decode_document"]

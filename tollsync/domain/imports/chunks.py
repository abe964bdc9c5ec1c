"""
Reassembly of streamed CSV payloads.

Chunks arrive tagged with a session id and a 1-based sequence number. The
assembler enforces ordering and releases only complete CSV lines (a newline
outside a quoted field), so a row split across two chunks is parsed once the
rest of it arrives.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from tollsync.core.errors import ValidationError
from tollsync.domain.imports.parser import decode_content

logger = logging.getLogger(__name__)

_QUOTE = 0x22
_NEWLINE = 0x0A


@dataclass
class ImportChunk:
    session_id: str
    data: bytes
    sequence: int
    is_last: bool = False


def complete_prefix_length(buffer: bytes) -> int:
    """Return the length of the longest prefix that ends on a record boundary."""
    in_quotes = False
    boundary = 0
    for index, byte in enumerate(buffer):
        if byte == _QUOTE:
            in_quotes = not in_quotes
        elif byte == _NEWLINE and not in_quotes:
            boundary = index + 1
    return boundary


class ChunkAssembler:
    """Validates chunk order for one stream and buffers partial lines."""

    def __init__(self, encoding: Optional[str] = None):
        self.session_id: Optional[str] = None
        self.expected_sequence = 1
        self.bytes_received = 0
        self.finished = False
        self._buffer = bytearray()
        self._encoding = encoding
        self._locked_codec: Optional[str] = None

    @property
    def chunks_received(self) -> int:
        return self.expected_sequence - 1

    def validate(self, chunk: ImportChunk) -> None:
        """
        Check a chunk against the stream protocol without consuming it.

        Raises:
            ValidationError: On empty session id, a session id change, a chunk
                after the final one, or a sequence number other than the next one
        """
        if not chunk.session_id or not chunk.session_id.strip():
            raise ValidationError("Chunk session_id is required")
        if self.finished:
            raise ValidationError("Chunk received after the final chunk")
        if self.session_id is not None and chunk.session_id != self.session_id:
            raise ValidationError(
                f"Chunk session_id '{chunk.session_id}' does not match stream session '{self.session_id}'"
            )
        if chunk.sequence != self.expected_sequence:
            problem = "Duplicate or out-of-order" if chunk.sequence < self.expected_sequence else "Out-of-order"
            raise ValidationError(
                f"{problem} chunk sequence {chunk.sequence} (expected {self.expected_sequence})",
                details={"sequence": chunk.sequence, "expected": self.expected_sequence},
            )

    def accept(self, chunk: ImportChunk) -> str:
        """
        Consume a chunk and return the text of all complete lines now available.

        On the final chunk every buffered byte is released, complete or not.
        """
        self.validate(chunk)
        if self.session_id is None:
            self.session_id = chunk.session_id
        self.expected_sequence += 1
        self.bytes_received += len(chunk.data)
        self._buffer.extend(chunk.data)

        if chunk.is_last:
            self.finished = True
            boundary = len(self._buffer)
        else:
            boundary = complete_prefix_length(self._buffer)

        ready = bytes(self._buffer[:boundary])
        del self._buffer[:boundary]
        return self._decode(ready)

    def _decode(self, portion: bytes) -> str:
        if not portion:
            return ""
        if self._locked_codec:
            try:
                return portion.decode(self._locked_codec)
            except UnicodeDecodeError:
                raise ValidationError(f"Chunk data is not valid {self._locked_codec} text")
        if portion.isascii():
            # No evidence about the codec yet; ASCII decodes the same either way.
            return portion.decode("ascii")
        text = decode_content(portion, self._encoding)
        self._locked_codec = "cp932" if _decoded_as_shift_jis(portion, text) else "utf-8"
        logger.debug("Stream %s locked to codec %s", self.session_id, self._locked_codec)
        return text


def _decoded_as_shift_jis(portion: bytes, text: str) -> bool:
    try:
        return portion.decode("utf-8-sig") != text
    except UnicodeDecodeError:
        return True

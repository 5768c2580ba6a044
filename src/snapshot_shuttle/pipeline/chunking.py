"""Chunking strategies for block-list uploads."""

import base64
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterator

DEFAULT_BLOCK_SIZE = 8 * 1024 * 1024


def block_id(index: int) -> str:
    """Base64 of the zero-padded block index; equal length for every block."""
    return base64.b64encode(f"{index:06d}".encode("ascii")).decode("ascii")


class ChunkingStrategy(ABC):
    """Base class for chunking strategies."""

    @abstractmethod
    def chunk(self, file_obj: BinaryIO) -> Iterator[tuple[str, bytes]]:
        """
        Split a file and yield (block_id, data) tuples in upload order.

        Args:
            file_obj: Open file object in binary mode.
        """
        pass


class FixedSizeChunker(ChunkingStrategy):
    """Fixed-size chunking strategy."""

    def __init__(self, chunk_size: int = DEFAULT_BLOCK_SIZE):
        """
        Initialize with a chunk size.

        Args:
            chunk_size: Size of each block in bytes. Defaults to 8 MiB.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def chunk(self, file_obj: BinaryIO) -> Iterator[tuple[str, bytes]]:
        index = 0
        while True:
            data = file_obj.read(self.chunk_size)
            if not data:
                break
            yield block_id(index), data
            index += 1

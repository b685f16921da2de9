"""
Chunk transport staging each chunk as a block of an Azure Block Blob.

Blocks are staged independently and only become the blob's content once
``commit`` writes the block list, so chunks may settle in any order.
"""

import asyncio
import base64
import logging
from typing import Optional

from azure.storage.blob import BlobBlock, ContentSettings
from azure.storage.blob.aio import BlobClient

from .chunks import FileChunk
from .transport import ChunkUpload


def block_id(index: int) -> str:
    return base64.b64encode(index.to_bytes(8, byteorder="big")).decode("ascii")


class AzureBlockTransport:
    def __init__(self, blob_client: BlobClient, logger: Optional[logging.Logger] = None) -> None:
        self.blob_client = blob_client
        self.logger = logger or logging.getLogger(__name__)
        self.bytes_staged = 0

    def upload(self, chunk: FileChunk) -> ChunkUpload:
        task = asyncio.ensure_future(self._stage(chunk))
        return ChunkUpload(settlement=task, cancel=task.cancel)

    async def _stage(self, chunk: FileChunk) -> int:
        data = await asyncio.to_thread(chunk.read)
        await self.blob_client.stage_block(
            block_id=block_id(chunk.index),
            data=data,
            length=len(data),
        )
        self.bytes_staged += len(data)
        return chunk.index

    async def commit(self, total: int, metadata: dict, content_type: str) -> None:
        """Assemble the staged blocks in index order into the final blob."""
        self.logger.info(f"Committing block list ({total} block(s)) ...")
        block_list = [BlobBlock(block_id(i)) for i in range(total)]
        await self.blob_client.commit_block_list(
            block_list,
            metadata=metadata,
            content_settings=ContentSettings(content_type=content_type),
        )

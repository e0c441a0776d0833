"""AES-128 decryption of HLS media segments."""

import asyncio
import logging
from concurrent.futures import Executor
from typing import Dict, Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .errors import InvalidPadding, KeyFetchFailed, TransportError, UnsupportedMethod
from .models import EncryptionContext, KeyReference, Segment
from .transport import Transport

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("AES-128", "NONE")


class SegmentDecryptor:
    """Fetches segment keys once per key URI and decrypts segments with AES-128-CBC."""

    def __init__(self, transport: Transport, executor: Optional[Executor] = None):
        self.transport = transport
        self.executor = executor
        self._keys: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def context_for(self, key_ref: Optional[KeyReference]) -> Optional[EncryptionContext]:
        """Context for a key declaration, or None for clear segments."""
        if key_ref is None or not key_ref.is_encrypted:
            return None
        if key_ref.method not in SUPPORTED_METHODS:
            raise UnsupportedMethod(f"unsupported segment encryption {key_ref.method}")
        if not key_ref.uri:
            raise KeyFetchFailed("AES-128 key declaration without a URI")

        async with self._lock:
            key = self._keys.get(key_ref.uri)
            if key is None:
                try:
                    key = await self.transport.fetch_bytes(key_ref.uri)
                except TransportError as exc:
                    raise KeyFetchFailed(f"could not fetch key {key_ref.uri}: {exc}") from exc
                if len(key) != 16:
                    raise KeyFetchFailed(f"key {key_ref.uri} is {len(key)} bytes, expected 16")
                self._keys[key_ref.uri] = key
                logger.debug(f"Fetched segment key {key_ref.uri}")
        return EncryptionContext(key=key, iv=key_ref.iv)

    def decrypt(self, context: Optional[EncryptionContext], data: bytes, sequence: int) -> bytes:
        if context is None:
            return data
        if not data or len(data) % AES.block_size:
            raise InvalidPadding(f"segment {sequence} is {len(data)} bytes, not a whole number of blocks")
        cipher = AES.new(context.key, AES.MODE_CBC, iv=context.iv_for(sequence))
        try:
            return unpad(cipher.decrypt(data), AES.block_size)
        except ValueError as exc:
            raise InvalidPadding(f"segment {sequence} has invalid PKCS#7 padding") from exc

    async def decrypt_segment(self, segment: Segment, data: bytes) -> bytes:
        context = await self.context_for(segment.key)
        if context is None:
            return data
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.decrypt, context, data, segment.sequence)

    def forget(self):
        self._keys.clear()

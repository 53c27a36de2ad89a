"""
sealed_codec.py — Seal/unseal opaque blobs for the commit/reveal protocol.

Strategies and trade payloads are sealed the moment they are committed and
stay opaque bytes to every component except the codec until the match is
revealed.

Two implementations:
    LocalSealCodec   — AES-GCM with a process key (cryptography)
    RemoteSealCodec  — delegates to an external threshold-encryption service
                       over HTTP (httpx)

Both raise SealError on failure. `unseal_batch` never raises per item: a
blob that cannot be opened comes back as None and the caller falls back to
its own plaintext copy.
"""

from __future__ import annotations

import hashlib
import os
from typing import List, Optional, Protocol

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from arena_errors import SealError


SEAL_VERSION = b"\x01"
NONCE_SIZE = 12
KEY_SALT = b"sealed-match-arena/v1"


class SealedStrategyCodec(Protocol):
    async def seal(self, plaintext: bytes) -> bytes: ...

    async def unseal(self, sealed: bytes) -> bytes: ...

    async def unseal_batch(self, sealed: List[bytes]) -> List[Optional[bytes]]: ...


def derive_key(secret: str) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", secret.encode(), KEY_SALT, 100_000, dklen=32)


# ─── Local AES-GCM ────────────────────────────────────────────────────────────

class LocalSealCodec:
    """
    AES-GCM codec keyed from ARENA_CODEC_KEY.

    Layout: version byte | 12-byte nonce | ciphertext+tag.
    Without a configured secret a random per-process key is used, which is
    fine for volatile matches that never outlive the process.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        key = derive_key(secret) if secret else AESGCM.generate_key(bit_length=256)
        self._aead = AESGCM(key)
        self.seal_count = 0
        self.unseal_count = 0

    async def seal(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        self.seal_count += 1
        return SEAL_VERSION + nonce + self._aead.encrypt(nonce, plaintext, None)

    async def unseal(self, sealed: bytes) -> bytes:
        if len(sealed) < 1 + NONCE_SIZE + 16 or sealed[:1] != SEAL_VERSION:
            raise SealError("malformed sealed blob")
        nonce = sealed[1:1 + NONCE_SIZE]
        try:
            plain = self._aead.decrypt(nonce, sealed[1 + NONCE_SIZE:], None)
        except InvalidTag as exc:
            raise SealError("sealed blob failed authentication") from exc
        self.unseal_count += 1
        return plain

    async def unseal_batch(self, sealed: List[bytes]) -> List[Optional[bytes]]:
        result: List[Optional[bytes]] = []
        for blob in sealed:
            try:
                result.append(await self.unseal(blob))
            except SealError as exc:
                logger.warning(f"LocalSealCodec: could not unseal blob ({exc})")
                result.append(None)
        return result


# ─── Remote service ───────────────────────────────────────────────────────────

class RemoteSealCodec:
    """
    Client for an external sealing service.

    Endpoints (JSON, hex-encoded bytes):
        POST /seal          {"data": hex}           → {"sealed": hex}
        POST /unseal        {"sealed": hex}         → {"data": hex}
        POST /unseal-batch  {"items": [hex, ...]}   → {"items": [hex | null, ...]}
    """

    def __init__(self, base_url: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, body: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                resp = await http.post(f"{self.base_url}{path}", json=body)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as exc:
            raise SealError(f"sealing service {path} failed: {exc}") from exc

    async def seal(self, plaintext: bytes) -> bytes:
        data = await self._post("/seal", {"data": plaintext.hex()})
        try:
            return bytes.fromhex(data["sealed"])
        except (KeyError, ValueError, TypeError) as exc:
            raise SealError(f"bad /seal response: {data}") from exc

    async def unseal(self, sealed: bytes) -> bytes:
        data = await self._post("/unseal", {"sealed": sealed.hex()})
        try:
            return bytes.fromhex(data["data"])
        except (KeyError, ValueError, TypeError) as exc:
            raise SealError(f"bad /unseal response: {data}") from exc

    async def unseal_batch(self, sealed: List[bytes]) -> List[Optional[bytes]]:
        if not sealed:
            return []
        data = await self._post("/unseal-batch", {"items": [b.hex() for b in sealed]})
        items = data.get("items")
        if not isinstance(items, list) or len(items) != len(sealed):
            raise SealError("unseal-batch returned a mismatched item list")
        result: List[Optional[bytes]] = []
        for item in items:
            try:
                result.append(bytes.fromhex(item) if item is not None else None)
            except (ValueError, TypeError):
                logger.warning("RemoteSealCodec: undecodable item in unseal-batch response")
                result.append(None)
        return result


def create_codec(secret: Optional[str] = None, service_url: Optional[str] = None) -> SealedStrategyCodec:
    if service_url:
        logger.info(f"Sealing via remote service {service_url}")
        return RemoteSealCodec(service_url)
    return LocalSealCodec(secret)

"""
Signing callbacks.

The pipeline never holds keys. It receives one callback per SignMethod:

    PREFIXED  personal_sign  EIP-191 prefix over the 32-byte op hash
    RAW       eth_sign       secp256k1 signature of the op hash itself

A callback is `(hash: bytes) -> bytes` and may be sync or async.
LocalKeySigner is the in-process implementation used by server-side flows
and tests; wallet front-ends supply their own callbacks.
"""

import inspect
import logging
from typing import Awaitable, Callable, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_utils import keccak

from .models import SignMethod

logger = logging.getLogger("paypai.signers")

SignFn = Callable[[bytes], Union[bytes, Awaitable[bytes]]]

_PREFIX_32 = b"\x19Ethereum Signed Message:\n32"


async def call_signer(fn: SignFn, op_hash: bytes) -> bytes:
    result = fn(op_hash)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, str):
        result = bytes.fromhex(result[2:] if result.startswith("0x") else result)
    return bytes(result)


def _recover(digest: bytes, signature: bytes) -> str:
    if len(signature) != 65:
        raise ValueError(f"signature must be 65 bytes, got {len(signature)}")
    v = signature[64]
    if v >= 27:
        v -= 27
    sig = keys.Signature(signature_bytes=signature[:64] + bytes([v]))
    return sig.recover_public_key_from_msg_hash(digest).to_checksum_address()


def recover_prefixed(op_hash: bytes, signature: bytes) -> str:
    """Signer address if `signature` is a personal_sign over op_hash."""
    return _recover(keccak(_PREFIX_32 + op_hash), signature)


def recover_raw(op_hash: bytes, signature: bytes) -> str:
    """Signer address if `signature` is a raw signature of op_hash."""
    return _recover(op_hash, signature)


class LocalKeySigner:
    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_prefixed(self, op_hash: bytes) -> bytes:
        signed = self._account.sign_message(encode_defunct(primitive=op_hash))
        return bytes(signed.signature)

    def sign_raw(self, op_hash: bytes) -> bytes:
        signed = self._account.unsafe_sign_hash(op_hash)
        return bytes(signed.signature)

    def methods(self) -> dict:
        return {SignMethod.PREFIXED: self.sign_prefixed, SignMethod.RAW: self.sign_raw}

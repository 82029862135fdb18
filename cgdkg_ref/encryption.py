"""Encryption of secret shares to receivers.

The dealing and aggregation code only relies on the `ShareCipher` interface:
it never looks inside a ciphertext, it only encodes, decodes and decrypts it.
`HashedElGamalCipher` is the implementation shipped with this package.
"""

from __future__ import annotations

import hmac
from abc import ABC, abstractmethod
from typing import Any, NamedTuple, Tuple

from secp256k1lab.secp256k1 import GE, Scalar
from secp256k1lab.ecdh import ecdh_libsecp256k1
from secp256k1lab.keys import pubkey_gen_plain
from secp256k1lab.util import int_from_bytes

from .util import (
    CG_DKG_STR,
    DecryptionError,
    MalformedPublicKeyError,
    tagged_hash_cgdkg,
)


class ShareCipher(ABC):
    """Public-key encryption of scalars to individual receivers.

    Ciphertexts are opaque to the caller. The only guarantee about their byte
    encoding is that `ciphertext_from_bytes(ciphertext_to_bytes(c))` returns a
    ciphertext equal to `c`.
    """

    @abstractmethod
    def validate_enckey(self, enckey: bytes) -> None:
        """Raise `MalformedPublicKeyError` if `enckey` is not a valid key."""

    @abstractmethod
    def encrypt(self, enckey: bytes, idx: int, share: Scalar, random: bytes) -> Any:
        """Encrypt `share` to the receiver with index `idx`."""

    @abstractmethod
    def decrypt(self, deckey: bytes, idx: int, ciphertext: Any) -> Scalar:
        """Decrypt a ciphertext addressed to the receiver with index `idx`.

        Raises:
            DecryptionError: If the ciphertext is malformed or was not
                encrypted to this key and index.
        """

    @abstractmethod
    def ciphertext_to_bytes(self, ciphertext: Any) -> bytes:
        pass

    @abstractmethod
    def ciphertext_from_bytes(self, b: bytes) -> Any:
        """Decode a ciphertext. Raises `ValueError` if `b` is malformed."""


###
### Receiver keys
###


def deckey_gen(seed: bytes) -> bytes:
    return tagged_hash_cgdkg("deckey", seed)


def enckey_gen(deckey: bytes) -> bytes:
    return pubkey_gen_plain(deckey)


###
### Hashed ElGamal
###


class Ciphertext(NamedTuple):
    pubnonce: bytes
    enc_share: Scalar
    tag: bytes

    def to_bytes(self) -> bytes:
        return self.pubnonce + self.enc_share.to_bytes() + self.tag

    @staticmethod
    def from_bytes(b: bytes) -> Ciphertext:
        if len(b) != CIPHERTEXT_LEN:
            raise ValueError
        pubnonce = b[0:33]
        GE.from_bytes_compressed(pubnonce)  # ValueError if not on the curve
        enc_share = Scalar.from_bytes_checked(b[33:65])
        return Ciphertext(pubnonce, enc_share, b[65:97])


CIPHERTEXT_LEN = 33 + 32 + 32


class HashedElGamalCipher(ShareCipher):
    # Every share is encrypted with a fresh ephemeral ECDH key. The shared
    # secret is hashed into an additive pad and into a key confirmation tag,
    # which lets the receiver detect ciphertexts that were not encrypted to it.

    def __init__(self, context: bytes = CG_DKG_STR.encode()) -> None:
        self.context = context

    def _pad_and_tag(
        self, shared: bytes, pubnonce: bytes, enckey: bytes, idx: int
    ) -> Tuple[Scalar, bytes]:
        data = (
            shared
            + pubnonce
            + enckey
            + idx.to_bytes(4, byteorder="big")
            + self.context
        )
        pad = Scalar(int_from_bytes(tagged_hash_cgdkg("encryption pad", data)))
        tag_key = tagged_hash_cgdkg("encryption tag key", data)
        return pad, tag_key

    @staticmethod
    def _tag(tag_key: bytes, enc_share: Scalar) -> bytes:
        return tagged_hash_cgdkg("encryption tag", tag_key + enc_share.to_bytes())

    def validate_enckey(self, enckey: bytes) -> None:
        if len(enckey) != 33:
            raise MalformedPublicKeyError("Encryption key must be 33 bytes")
        try:
            GE.from_bytes_compressed(enckey)
        except ValueError as e:
            raise MalformedPublicKeyError("Encryption key is not on the curve") from e

    def encrypt(
        self, enckey: bytes, idx: int, share: Scalar, random: bytes
    ) -> Ciphertext:
        secnonce = tagged_hash_cgdkg(
            "encryption secnonce",
            random
            + share.to_bytes()
            + enckey
            + idx.to_bytes(4, byteorder="big")
            + self.context,
        )
        pubnonce = pubkey_gen_plain(secnonce)
        shared = ecdh_libsecp256k1(secnonce, enckey)
        pad, tag_key = self._pad_and_tag(shared, pubnonce, enckey, idx)
        enc_share = share + pad
        return Ciphertext(pubnonce, enc_share, self._tag(tag_key, enc_share))

    def decrypt(self, deckey: bytes, idx: int, ciphertext: Ciphertext) -> Scalar:
        try:
            enckey = pubkey_gen_plain(deckey)
            shared = ecdh_libsecp256k1(deckey, ciphertext.pubnonce)
        except ValueError as e:
            raise DecryptionError("Malformed ciphertext or decryption key") from e
        pad, tag_key = self._pad_and_tag(shared, ciphertext.pubnonce, enckey, idx)
        expected_tag = self._tag(tag_key, ciphertext.enc_share)
        if not hmac.compare_digest(expected_tag, ciphertext.tag):
            raise DecryptionError("Ciphertext was not encrypted to this receiver")
        share: Scalar = ciphertext.enc_share - pad
        return share

    def ciphertext_to_bytes(self, ciphertext: Ciphertext) -> bytes:
        b = ciphertext.to_bytes()
        assert len(b) == CIPHERTEXT_LEN
        return b

    def ciphertext_from_bytes(self, b: bytes) -> Ciphertext:
        return Ciphertext.from_bytes(b)

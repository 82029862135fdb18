from __future__ import annotations

from typing import List, NamedTuple

from secp256k1lab.secp256k1 import GE, Scalar
from secp256k1lab.util import int_from_bytes

from .util import tagged_hash_cgdkg
from .vss import PublicCoefficients


# A dealer proves knowledge of the constant term of its committed polynomial,
# i.e., of the discrete logarithm of com.ges[0] with respect to the protocol
# generator H. The Fiat-Shamir challenge commits to the entire dealing, so the
# proof cannot be transplanted onto other ciphertexts or another commitment.


class SharingProof(NamedTuple):
    R: GE
    s: Scalar

    def to_bytes(self) -> bytes:
        return self.R.to_bytes_compressed() + self.s.to_bytes()

    @staticmethod
    def from_bytes(b: bytes) -> SharingProof:
        if len(b) != 65:
            raise ValueError
        R = GE.from_bytes_compressed(b[0:33])
        s = Scalar.from_bytes_checked(b[33:65])
        return SharingProof(R, s)


def sharing_transcript(com: PublicCoefficients, ciphertexts: List[bytes]) -> bytes:
    t = com.t()
    n = len(ciphertexts)
    return (
        t.to_bytes(4, byteorder="big")
        + n.to_bytes(4, byteorder="big")
        + com.generator.to_bytes_compressed()
        + com.to_bytes()
        + b"".join(len(c).to_bytes(4, byteorder="big") + c for c in ciphertexts)
    )


def sharing_challenge(R: GE, transcript: bytes) -> Scalar:
    return Scalar(
        int_from_bytes(
            tagged_hash_cgdkg(
                "sharing proof challenge", R.to_bytes_compressed() + transcript
            )
        )
    )


def prove_sharing(
    secret: Scalar,
    com: PublicCoefficients,
    ciphertexts: List[bytes],
    random: bytes,
) -> SharingProof:
    transcript = sharing_transcript(com, ciphertexts)
    # Synthetic nonce, as in BIP 340 signing.
    k = Scalar(
        int_from_bytes(
            tagged_hash_cgdkg(
                "sharing proof nonce", secret.to_bytes() + random + transcript
            )
        )
    )
    assert k != Scalar(0)
    R = k * com.generator
    e = sharing_challenge(R, transcript)
    return SharingProof(R, k + e * secret)


def verify_sharing(
    proof: SharingProof, com: PublicCoefficients, ciphertexts: List[bytes]
) -> bool:
    if com.t() < 1:
        return False
    R, s = proof
    e = sharing_challenge(R, sharing_transcript(com, ciphertexts))
    valid: bool = s * com.generator == R + e * com.commitment_to_secret()
    return valid

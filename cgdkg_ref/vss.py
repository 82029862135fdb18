from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from secp256k1lab.secp256k1 import GE, Scalar
from secp256k1lab.util import int_from_bytes

from .util import tagged_hash_cgdkg


@lru_cache(maxsize=None)
def derive_generator(domain: str) -> GE:
    # Hash the domain onto the curve by try-and-increment. Nobody knows the
    # discrete logarithm of the result with respect to G.
    counter = 0
    while True:
        x = tagged_hash_cgdkg(
            "generator", domain.encode() + counter.to_bytes(4, byteorder="big")
        )
        try:
            return GE.from_bytes_compressed(b"\x02" + x)
        except ValueError:
            counter += 1


class CommitmentMismatchError(ValueError):
    """Raised if two commitments of different shape are combined."""


class Polynomial:
    # A scalar polynomial.
    #
    # A polynomial f of degree at most t - 1 is represented by a list `coeffs`
    # of t coefficients, i.e., f(x) = coeffs[0] + ... + coeffs[t-1] *
    # x^(t-1).
    coeffs: List[Scalar]

    def __init__(self, coeffs: List[Scalar]) -> None:
        self.coeffs = coeffs

    def eval(self, x: Scalar) -> Scalar:
        # Evaluate a polynomial at position x.

        value = Scalar(0)
        # Reverse coefficients to compute evaluation via Horner's method
        for coeff in self.coeffs[::-1]:
            value = value * x + coeff
        return value

    def __call__(self, x: Scalar) -> Scalar:
        return self.eval(x)

    def __add__(self, other: Polynomial) -> Polynomial:
        if len(self.coeffs) != len(other.coeffs):
            raise ValueError("Polynomials must have the same number of coefficients")
        return Polynomial([a + b for a, b in zip(self.coeffs, other.coeffs)])


class PublicCoefficients:
    """Commitment to a polynomial, one group element per coefficient.

    The commitment to f(x) = a_0 + ... + a_{t-1} x^{t-1} over the generator H
    is [a_0 * H, ..., a_{t-1} * H]. Commitments over the same generator and of
    the same length can be added, which yields the commitment to the sum of
    the underlying polynomials.
    """

    ges: List[GE]
    generator: GE

    def __init__(self, ges: List[GE], generator: GE) -> None:
        self.ges = ges
        self.generator = generator

    @staticmethod
    def zero(generator: GE, t: int = 1) -> PublicCoefficients:
        return PublicCoefficients([GE()] * t, generator)

    @staticmethod
    def from_polynomial(f: Polynomial, generator: GE) -> PublicCoefficients:
        return PublicCoefficients([c * generator for c in f.coeffs], generator)

    def t(self) -> int:
        return len(self.ges)

    def pubshare(self, i: int) -> GE:
        # Return the partial public key of the receiver with index i.
        #
        # This computes f(i+1) * H.
        return pubshare_at(self.ges, i + 1)

    def combine(self, other: PublicCoefficients) -> PublicCoefficients:
        if self.t() != other.t():
            raise CommitmentMismatchError(
                f"Cannot combine commitments of length {self.t()} and {other.t()}"
            )
        if self.generator != other.generator:
            raise CommitmentMismatchError(
                "Cannot combine commitments over different generators"
            )
        return PublicCoefficients(
            [self.ges[i] + other.ges[i] for i in range(self.t())], self.generator
        )

    def __add__(self, other: PublicCoefficients) -> PublicCoefficients:
        return self.combine(other)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PublicCoefficients):
            return NotImplemented
        return self.generator == other.generator and self.ges == other.ges

    def __repr__(self) -> str:
        return f"PublicCoefficients({self.to_bytes().hex()})"

    def commitment_to_secret(self) -> GE:
        return self.ges[0]

    def to_bytes(self) -> bytes:
        return b"".join([ge.to_bytes_compressed_with_infinity() for ge in self.ges])

    @staticmethod
    def from_bytes_and_t(b: bytes, t: int, generator: GE) -> PublicCoefficients:
        if len(b) != 33 * t:
            raise ValueError
        ges = [
            GE.from_bytes_compressed_with_infinity(b[i : i + 33])
            for i in range(0, 33 * t, 33)
        ]
        return PublicCoefficients(ges, generator)


def pubshare_at(ges: List[GE], x: int) -> GE:
    # Powers x^0, ..., x^(t-1) are accumulated in the scalar field, followed by
    # a single multi-scalar multiplication.
    x_pow = Scalar(x)
    x_pows = [Scalar(1)]
    for _ in range(len(ges) - 1):
        x_pows.append(x_pows[-1] * x_pow)
    pubshare: GE = GE.batch_mul(*zip(x_pows, ges))
    return pubshare


def pubcoeff_to_pks(
    public_coefficients: PublicCoefficients, total_nodes: int
) -> List[GE]:
    # Evaluate the commitment at 1, ..., n. The result at position i is the
    # partial public key of receiver i.
    return [public_coefficients.pubshare(i) for i in range(total_nodes)]


def verify_secshare(secshare: Scalar, pubshare: GE, generator: GE) -> bool:
    # The caller needs to provide the correct pubshare
    actual = secshare * generator
    valid: bool = actual == pubshare
    return valid


class VSS:
    f: Polynomial

    def __init__(self, f: Polynomial) -> None:
        self.f = f

    @staticmethod
    def generate(seed: bytes, t: int, secret: Optional[Scalar] = None) -> VSS:
        coeffs = [
            Scalar(
                int_from_bytes(
                    tagged_hash_cgdkg(
                        "vss coeffs", seed + i.to_bytes(4, byteorder="big")
                    )
                )
            )
            for i in range(t)
        ]
        if secret is not None:
            # Resharing: the constant term is an existing secret (share).
            coeffs[0] = secret
        return VSS(Polynomial(coeffs))

    def secshare_for(self, i: int) -> Scalar:
        # Return the secret share for the receiver with index i.
        #
        # This computes f(i+1).
        if i < 0:
            raise ValueError(f"Invalid receiver index: {i}")
        x = Scalar(i + 1)
        # Ensure we don't compute f(0), which is the secret.
        assert x != Scalar(0)
        return self.f(x)

    def secshares(self, n: int) -> List[Scalar]:
        # Return the secret shares for the receivers with indices 0..n-1.
        #
        # This computes [f(1), ..., f(n)].
        return [self.secshare_for(i) for i in range(0, n)]

    def commit(self, generator: GE) -> PublicCoefficients:
        return PublicCoefficients.from_polynomial(self.f, generator)

    def secret(self) -> Scalar:
        # Return the secret to be shared.
        #
        # This computes f(0).
        return self.f.coeffs[0]

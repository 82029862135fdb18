"""Non-interactive distributed key generation (NIDKG).

Each dealer independently creates a `Dealing`, i.e., a commitment to a random
polynomial of degree `t - 1`, an encryption of the polynomial's evaluation for
every receiver, and a proof that binds the commitment to the ciphertexts.
Dealings are broadcast by some external transport. Every receiver verifies
every dealing it has obtained, excludes invalid ones, and aggregates the rest
into its share of the joint secret, the group public key, and the partial
public keys of all receivers.

WARNING: This code is slow and trivially vulnerable to side channel attacks. Do
not use for anything but tests.

The public API consists of all functions with docstrings, including the types in
their arguments and return values, and the exceptions they raise; see also the
`__all__` list. All other definitions are internal.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from secp256k1lab.secp256k1 import GE, Scalar

from .encryption import ShareCipher
from .proof import SharingProof, prove_sharing, verify_sharing
from .util import (
    CG_DKG_STR,
    tagged_hash_cgdkg,
    DealingError,
    InvalidThresholdError,
    MisnumberedReceiverError,
    MalformedPublicKeyError,
    MalformedFsPublicKeyError,
    InternalError,
    InvalidSharingProofError,
    DecryptionError,
    AggregationError,
)
from .vss import (
    VSS,
    CommitmentMismatchError,
    PublicCoefficients,
    derive_generator,
    pubcoeff_to_pks,
)

__all__ = [
    # Functions
    "create_dealing",
    "validate_receivers",
    "validate_dealing",
    "verify_dealing",
    "decrypt_share",
    "aggregate_dealings",
    "pubcoeff_to_pks",
    # Exceptions
    "DealingError",
    "InvalidThresholdError",
    "MisnumberedReceiverError",
    "MalformedFsPublicKeyError",
    "InternalError",
    "InvalidSharingProofError",
    "DecryptionError",
    "AggregationError",
    "CommitmentMismatchError",
    # Types
    "DealingParams",
    "Dealing",
    "AggregationResult",
]

logger = logging.getLogger(__name__)


###
### Parameters
###


class DealingParams(NamedTuple):
    """A `DealingParams` tuple holds the common parameters of a NIDKG round.

    Attributes:
        receiver_keys: Encryption keys of the receivers, keyed by receiver
            index. The indices must be exactly `0..n-1`.
        t: The threshold `t`, i.e., the number of coefficients of every
            dealer's polynomial. It must hold that `1 <= t <= n <= 2**32 - 1`.
        domain: Protocol domain string from which the commitment generator is
            derived. Rounds with different domains produce incompatible
            dealings.
    """

    receiver_keys: Dict[int, bytes]
    t: int
    domain: str = CG_DKG_STR


def params_validate(params: DealingParams, number_of_receivers: int) -> None:
    t = params.t
    if not (1 <= t <= number_of_receivers <= 2**32 - 1):
        raise InvalidThresholdError(
            f"Threshold {t} not supported for {number_of_receivers} receivers"
        )


def validate_receivers(
    receiver_keys: Dict[int, Any], number_of_receivers: int
) -> None:
    """Check that the receiver indices are exactly `0..number_of_receivers-1`.

    Raises:
        MisnumberedReceiverError: If an index is missing, out of range, or
            if there are more or fewer receivers than `number_of_receivers`.
            The exception carries the first index that does not fit.
    """
    for i, receiver_index in enumerate(sorted(receiver_keys)):
        if receiver_index != i:
            raise MisnumberedReceiverError(receiver_index, number_of_receivers)
    if len(receiver_keys) != number_of_receivers:
        raise MisnumberedReceiverError(
            min(len(receiver_keys), number_of_receivers), number_of_receivers
        )


def validate_enckeys(cipher: ShareCipher, receiver_keys: Dict[int, bytes]) -> None:
    for receiver_index in sorted(receiver_keys):
        try:
            cipher.validate_enckey(receiver_keys[receiver_index])
        except MalformedPublicKeyError as e:
            raise MalformedFsPublicKeyError(receiver_index, e) from e


###
### Dealings
###


class Dealing(NamedTuple):
    """A dealer's contribution to a NIDKG round.

    Attributes:
        public_coefficients: Commitment to the dealer's polynomial `f`.
        ciphertexts: Encryption of `f(i+1)` to receiver `i`, for every
            receiver index `i` in `0..n-1`.
        zk_proof_correct_sharing: Proof binding the commitment to the
            ciphertexts.
    """

    public_coefficients: PublicCoefficients
    ciphertexts: List[Any]
    zk_proof_correct_sharing: SharingProof

    def to_bytes(self, cipher: ShareCipher) -> bytes:
        t = self.public_coefficients.t()
        n = len(self.ciphertexts)
        proof = self.zk_proof_correct_sharing.to_bytes()
        return (
            t.to_bytes(4, byteorder="big")
            + n.to_bytes(4, byteorder="big")
            + self.public_coefficients.to_bytes()
            + b"".join(
                len(c).to_bytes(4, byteorder="big") + c
                for c in (cipher.ciphertext_to_bytes(ct) for ct in self.ciphertexts)
            )
            + len(proof).to_bytes(4, byteorder="big")
            + proof
        )

    @staticmethod
    def from_bytes(
        b: bytes, cipher: ShareCipher, domain: str = CG_DKG_STR
    ) -> Dealing:
        rest = b

        # Read t and n (4 bytes each)
        if len(rest) < 8:
            raise ValueError
        t, rest = int.from_bytes(rest[:4], byteorder="big"), rest[4:]
        n, rest = int.from_bytes(rest[:4], byteorder="big"), rest[4:]

        # Read public_coefficients (33*t bytes)
        if len(rest) < 33 * t:
            raise ValueError
        public_coefficients, rest = (
            PublicCoefficients.from_bytes_and_t(
                rest[: 33 * t], t, derive_generator(domain)
            ),
            rest[33 * t :],
        )

        # Read n length-prefixed ciphertexts
        ciphertexts = []
        for _ in range(n):
            c, rest = read_length_prefixed(rest)
            ciphertexts.append(cipher.ciphertext_from_bytes(c))

        # Read zk_proof_correct_sharing
        proof, rest = read_length_prefixed(rest)
        zk_proof_correct_sharing = SharingProof.from_bytes(proof)

        if len(rest) != 0:
            raise ValueError
        return Dealing(public_coefficients, ciphertexts, zk_proof_correct_sharing)


def read_length_prefixed(b: bytes) -> Tuple[bytes, bytes]:
    if len(b) < 4:
        raise ValueError
    length, rest = int.from_bytes(b[:4], byteorder="big"), b[4:]
    if len(rest) < length:
        raise ValueError
    return rest[:length], rest[length:]


def create_dealing(
    params: DealingParams,
    cipher: ShareCipher,
    random: bytes,
    secret: Optional[Scalar] = None,
) -> Dealing:
    """Create a dealing for the receivers in `params`.

    Arguments:
        params: Common parameters of the round.
        cipher: Cipher used to encrypt the shares to the receivers.
        random: FRESH random byte string (32 bytes).
        secret: Constant term of the dealer's polynomial. If `None`, a fresh
            secret is derived from `random`. Passing an existing secret share
            lets the dealer reshare it to a new set of receivers.

    Returns:
        Dealing: The dealing, to be broadcast to all receivers.

    Raises:
        InvalidThresholdError: If `1 <= t <= n <= 2**32 - 1` does not hold.
        MisnumberedReceiverError: If the receiver indices are not `0..n-1`.
        MalformedFsPublicKeyError: If a receiver's encryption key is invalid.
        InternalError: If encrypting a share fails.
        ValueError: If the length of `random` is not 32 bytes.
    """
    if len(random) != 32:
        raise ValueError
    receiver_keys = params.receiver_keys
    n = len(receiver_keys)
    params_validate(params, n)
    validate_receivers(receiver_keys, n)
    validate_enckeys(cipher, receiver_keys)

    generator = derive_generator(params.domain)
    vss = VSS.generate(tagged_hash_cgdkg("vss seed", random), params.t, secret)
    shares = vss.secshares(n)
    com = vss.commit(generator)

    try:
        ciphertexts = [
            cipher.encrypt(receiver_keys[i], i, shares[i], random) for i in range(n)
        ]
        ciphertext_bytes = [cipher.ciphertext_to_bytes(c) for c in ciphertexts]
    except ValueError as e:
        raise InternalError("Encryption of secret shares failed") from e

    proof = prove_sharing(vss.secret(), com, ciphertext_bytes, random)
    logger.debug("Created dealing for %d receivers with threshold %d", n, params.t)
    return Dealing(com, ciphertexts, proof)


def validate_dealing(
    params: DealingParams, cipher: ShareCipher, dealing: Dealing
) -> None:
    """Check that a dealing is well-formed for the receivers in `params`.

    This only inspects public values. It does not verify the proof of correct
    sharing; use `verify_dealing` before aggregating a dealing.

    Raises:
        InvalidThresholdError: If `1 <= t <= n <= 2**32 - 1` does not hold for
            the `n` receivers in `params`, or if the dealing does not commit
            to exactly `t` coefficients.
        MisnumberedReceiverError: If the receiver indices in `params` are not
            exactly `0..n-1`, or if the dealing does not carry exactly `n`
            ciphertexts.
        MalformedFsPublicKeyError: If a receiver's encryption key is invalid.
        CommitmentMismatchError: If the dealing was created for another domain.
    """
    n = len(params.receiver_keys)
    com = dealing.public_coefficients
    try:
        params_validate(params, n)
        validate_receivers(params.receiver_keys, n)
        validate_enckeys(cipher, params.receiver_keys)
        if len(dealing.ciphertexts) != n:
            raise MisnumberedReceiverError(min(len(dealing.ciphertexts), n), n)
        if com.t() != params.t:
            raise InvalidThresholdError(
                f"Dealing commits to {com.t()} coefficients, expected {params.t}"
            )
        if com.generator != derive_generator(params.domain):
            raise CommitmentMismatchError("Dealing was created for another domain")
    except (DealingError, CommitmentMismatchError) as e:
        logger.debug("Rejecting dealing: %r", e)
        raise


def verify_dealing(
    params: DealingParams, cipher: ShareCipher, dealing: Dealing
) -> None:
    """Validate a dealing and verify its proof of correct sharing.

    Only dealings that pass this check may be passed to `aggregate_dealings`.
    A caller that obtains an exception for some dealing should exclude that
    dealer and continue with the remaining dealings.

    Raises:
        InvalidSharingProofError: If the proof does not verify.
        All exceptions raised by `validate_dealing`.
    """
    validate_dealing(params, cipher, dealing)
    ciphertext_bytes = [cipher.ciphertext_to_bytes(c) for c in dealing.ciphertexts]
    if not verify_sharing(
        dealing.zk_proof_correct_sharing, dealing.public_coefficients, ciphertext_bytes
    ):
        logger.debug("Rejecting dealing: invalid proof of correct sharing")
        raise InvalidSharingProofError("Invalid proof of correct sharing")


###
### Aggregation
###


class AggregationResult(NamedTuple):
    """Holds a receiver's outputs of a NIDKG round.

    Attributes:
        secret_key_share: Secret share of the receiver. This is the only
            secret value, and it is never part of the `repr`.
        group_public_key: Public key of the group, i.e., the constant term of
            `combined_commitment`.
        partial_public_keys: Partial public key of every receiver; entry `i`
            is `combined_commitment` evaluated at `i+1`.
        combined_commitment: Sum of the commitments of all dealings.
    """

    secret_key_share: Scalar
    group_public_key: GE
    partial_public_keys: List[GE]
    combined_commitment: PublicCoefficients

    def __repr__(self) -> str:
        return (
            "AggregationResult(secret_key_share=<redacted>, "
            f"group_public_key={self.group_public_key!r}, "
            f"partial_public_keys={self.partial_public_keys!r}, "
            f"combined_commitment={self.combined_commitment!r})"
        )


def decrypt_share(
    cipher: ShareCipher, dealing: Dealing, deckey: bytes, node_index: int
) -> Scalar:
    """Decrypt the share of receiver `node_index` in a dealing.

    Raises:
        DecryptionError: If the ciphertext cannot be decrypted.
    """
    return cipher.decrypt(deckey, node_index, dealing.ciphertexts[node_index])


def decrypt_shares_concurrently(
    cipher: ShareCipher,
    dealings: List[Dealing],
    deckey: bytes,
    node_index: int,
    max_workers: int,
) -> List[Scalar]:
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(decrypt_share, cipher, dealing, deckey, node_index)
            for dealing in dealings
        ]
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [
            j
            for j, future in enumerate(futures)
            if future in done and future.exception() is not None
        ]
        if failed:
            for future in not_done:
                future.cancel()
            j = failed[0]
            e = futures[j].exception()
            if isinstance(e, DecryptionError):
                logger.warning("Decryption of dealing %d failed", j)
                raise AggregationError(j, "Secret accumulation failed") from e
            assert e is not None
            raise e
        return [future.result() for future in futures]


def aggregate_dealings(
    cipher: ShareCipher,
    dealings: List[Dealing],
    deckey: bytes,
    node_index: int,
    total_nodes: int,
    domain: str = CG_DKG_STR,
    max_workers: Optional[int] = None,
) -> AggregationResult:
    """Aggregate verified dealings into this receiver's outputs.

    Every dealing must have passed `verify_dealing`. The order of `dealings`
    does not affect the result.

    Arguments:
        cipher: Cipher the dealings were encrypted with.
        dealings: The verified dealings. May be empty, in which case the
            outputs commit to the zero polynomial.
        deckey: This receiver's decryption key.
        node_index: This receiver's index in `0..total_nodes-1`.
        total_nodes: The number of receivers `n`.
        domain: Protocol domain string the dealings were created for.
        max_workers: If set, decrypt the dealings concurrently in a thread
            pool with this many workers.

    Returns:
        AggregationResult: This receiver's secret share and the public outputs
            of the round.

    Raises:
        AggregationError: If the share of this receiver in any dealing cannot
            be decrypted. No partial result is returned. The index of the
            offending dealing is provided as part of the exception.
        CommitmentMismatchError: If the dealings commit to polynomials of
            different degrees or were created for different domains.
        ValueError: If `node_index` is out of range or a dealing does not
            have exactly `total_nodes` ciphertexts.
    """
    if not (0 <= node_index < total_nodes):
        raise ValueError(f"Invalid node index: {node_index}")
    for dealing in dealings:
        if len(dealing.ciphertexts) != total_nodes:
            raise ValueError("Dealing does not address all receivers")

    t = dealings[0].public_coefficients.t() if dealings else 1
    combined_commitment = PublicCoefficients.zero(derive_generator(domain), t)
    for dealing in dealings:
        combined_commitment = combined_commitment + dealing.public_coefficients

    if max_workers is not None and len(dealings) > 1:
        shares = decrypt_shares_concurrently(
            cipher, dealings, deckey, node_index, max_workers
        )
    else:
        shares = []
        for j, dealing in enumerate(dealings):
            try:
                shares.append(decrypt_share(cipher, dealing, deckey, node_index))
            except DecryptionError as e:
                logger.warning("Decryption of dealing %d failed", j)
                raise AggregationError(j, "Secret accumulation failed") from e

    secret_key_share = Scalar(0)
    for share in shares:
        secret_key_share = secret_key_share + share

    partial_public_keys = pubcoeff_to_pks(combined_commitment, total_nodes)
    logger.info(
        "Aggregated %d dealings for node %d of %d",
        len(dealings),
        node_index,
        total_nodes,
    )
    return AggregationResult(
        secret_key_share,
        combined_commitment.commitment_to_secret(),
        partial_public_keys,
        combined_commitment,
    )

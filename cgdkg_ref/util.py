from typing import Any

from secp256k1lab.util import tagged_hash


CG_DKG_STR = "cgdkg"
DKG_TAG = "CGDKG/"


def tagged_hash_cgdkg(tag: str, msg: bytes) -> bytes:
    return tagged_hash(DKG_TAG + tag, msg)


###
### Dealing precondition errors
###


class DealingError(Exception):
    """Base exception for dealings that cannot be created or accepted."""


class InvalidThresholdError(DealingError):
    """Raised if the threshold is not supported for the set of receivers.

    This is the case unless `1 <= t <= n <= 2**32 - 1` holds, where `n` is the
    number of receivers, or if the public coefficients of a dealing do not
    consist of exactly `t` group elements over the protocol generator.
    """


class MisnumberedReceiverError(DealingError):
    """Raised if the receiver indices are not exactly `0..n-1`.

    Attributes:
        receiver_index (int): The first receiver index that does not fit.
        number_of_receivers (int): The number of receivers `n` addressed by
            the dealing.
    """

    def __init__(self, receiver_index: int, number_of_receivers: int, *args: Any):
        self.receiver_index = receiver_index
        self.number_of_receivers = number_of_receivers
        super().__init__(receiver_index, number_of_receivers, *args)


class MalformedPublicKeyError(ValueError):
    """Raised if an encryption key is not a valid public key."""


class MalformedFsPublicKeyError(DealingError):
    """Raised if the encryption key of a receiver is malformed.

    Attributes:
        receiver_index (int): Index of the receiver.
        error (MalformedPublicKeyError): The underlying key error.
    """

    def __init__(
        self, receiver_index: int, error: MalformedPublicKeyError, *args: Any
    ):
        self.receiver_index = receiver_index
        self.error = error
        super().__init__(receiver_index, error, *args)


class InternalError(DealingError):
    """Raised if a lower layer fails for reasons not caused by the caller."""


###
### Cryptographic integrity errors
###


class ProtocolError(Exception):
    """Base exception for errors caused by received dealings."""


class InvalidSharingProofError(ProtocolError):
    """Raised if the proof of correct sharing of a dealing does not verify.

    A dealing that raises this exception was not created honestly (or was
    modified in transit) and must be excluded before aggregation.
    """


class DecryptionError(ProtocolError):
    """Raised if a ciphertext cannot be decrypted with the given key.

    This covers ciphertexts that are malformed, encrypted to another receiver
    or another key, or corrupted.
    """


class AggregationError(ProtocolError):
    """Raised if a set of dealings cannot be aggregated.

    No partial result is available when this is raised. The caller is
    expected to exclude the dealing in question and aggregate again.

    Attributes:
        dealing (int): Position of the offending dealing in the input list.
    """

    def __init__(self, dealing: int, *args: Any):
        self.dealing = dealing
        super().__init__(dealing, *args)

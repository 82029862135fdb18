#!/usr/bin/env python3

"""Tests for the NIDKG reference implementation"""

from itertools import combinations
from random import randint
from typing import Dict, List, Optional, Tuple
from secrets import token_bytes as random_bytes
import logging

import pytest
from secp256k1lab.secp256k1 import GE, G, Scalar

from cgdkg_ref.util import (
    AggregationError,
    DecryptionError,
    InvalidSharingProofError,
    InternalError,
    InvalidThresholdError,
    MalformedFsPublicKeyError,
    MalformedPublicKeyError,
    MisnumberedReceiverError,
    tagged_hash_cgdkg,
)
from cgdkg_ref.vss import (
    CommitmentMismatchError,
    Polynomial,
    PublicCoefficients,
    VSS,
    derive_generator,
    pubcoeff_to_pks,
    verify_secshare,
)
from cgdkg_ref.encryption import (
    CIPHERTEXT_LEN,
    HashedElGamalCipher,
    deckey_gen,
    enckey_gen,
)
from cgdkg_ref.proof import SharingProof
import cgdkg_ref.nidkg as nidkg

from example import simulate_nidkg_full


H = derive_generator("cgdkg")
cipher = HashedElGamalCipher()

# Not a valid x-coordinate
INVALID_ENCKEY = b"\x03" + 31 * b"\x00" + b"\x05"


def rand_scalar() -> Scalar:
    return Scalar(randint(1, GE.ORDER - 1))


def rand_polynomial(t: int) -> Polynomial:
    return Polynomial([rand_scalar() for _ in range(t)])


def setup_receivers(n: int, t: int) -> Tuple[List[bytes], nidkg.DealingParams]:
    deckeys = [deckey_gen(random_bytes(32)) for _ in range(n)]
    receiver_keys = {i: enckey_gen(deckeys[i]) for i in range(n)}
    return deckeys, nidkg.DealingParams(receiver_keys, t)


def create_dealings(
    params: nidkg.DealingParams,
    k: int,
    secrets: Optional[List[Scalar]] = None,
) -> Tuple[List[nidkg.Dealing], List[VSS]]:
    # Also return the dealers' polynomials, which create_dealing derives from
    # `random`, so that tests can compute the expected outputs.
    dealings = []
    vsss = []
    for d in range(k):
        random = random_bytes(32)
        secret = None if secrets is None else secrets[d]
        dealings.append(nidkg.create_dealing(params, cipher, random, secret))
        vsss.append(
            VSS.generate(tagged_hash_cgdkg("vss seed", random), params.t, secret)
        )
    return dealings, vsss


def derive_interpolating_value(L, x_i):
    assert x_i in L
    assert all(L.count(x_j) <= 1 for x_j in L)
    lam = Scalar(1)
    for x_j in L:
        x_j = Scalar(x_j)
        x_i = Scalar(x_i)
        if x_j == x_i:
            continue
        lam *= x_j / (x_j - x_i)
    return lam


def recover_secret(participant_indices, shares) -> Scalar:
    interpolated_shares = []
    t = len(shares)
    assert len(participant_indices) == t
    for i in range(t):
        lam = derive_interpolating_value(participant_indices, participant_indices[i])
        interpolated_shares += [(lam * shares[i])]
    recovered_secret = Scalar.sum(*interpolated_shares)
    return recovered_secret


def public_bytes(result: nidkg.AggregationResult) -> bytes:
    return (
        result.group_public_key.to_bytes_compressed_with_infinity()
        + b"".join(
            pk.to_bytes_compressed_with_infinity() for pk in result.partial_public_keys
        )
        + result.combined_commitment.to_bytes()
    )


###
### Commitments
###


def test_derive_generator():
    assert derive_generator("cgdkg") == H
    assert not H.infinity
    assert H != G
    assert derive_generator("another domain") != H


def test_commitment_linearity():
    for t in range(1, 4):
        f = rand_polynomial(t)
        g = rand_polynomial(t)
        com_f = PublicCoefficients.from_polynomial(f, H)
        com_g = PublicCoefficients.from_polynomial(g, H)
        assert com_f.combine(com_g) == PublicCoefficients.from_polynomial(f + g, H)
        assert com_f + com_g == com_g + com_f
        # The zero commitment is the identity
        assert PublicCoefficients.zero(H, t) + com_f == com_f


def test_commitment_combine_mismatch():
    com2 = PublicCoefficients.from_polynomial(rand_polynomial(2), H)
    com3 = PublicCoefficients.from_polynomial(rand_polynomial(3), H)
    with pytest.raises(CommitmentMismatchError):
        com2 + com3
    with pytest.raises(CommitmentMismatchError):
        com2 + PublicCoefficients.zero(G, 2)


def test_commitment_serialization():
    com = PublicCoefficients.from_polynomial(rand_polynomial(3), H)
    assert PublicCoefficients.from_bytes_and_t(com.to_bytes(), 3, H) == com
    zero = PublicCoefficients.zero(H, 2)
    assert PublicCoefficients.from_bytes_and_t(zero.to_bytes(), 2, H) == zero
    with pytest.raises(ValueError):
        PublicCoefficients.from_bytes_and_t(com.to_bytes(), 2, H)


@pytest.mark.parametrize("t", [1, 2, 3, 4])
def test_pubcoeff_to_pks(t):
    n = 5
    f = rand_polynomial(t)
    pks = pubcoeff_to_pks(PublicCoefficients.from_polynomial(f, H), n)
    assert len(pks) == n
    for i in range(1, n + 1):
        assert pks[i - 1] == f(Scalar(i)) * H


def test_pubcoeff_to_pks_degenerate_threshold():
    com = PublicCoefficients.from_polynomial(rand_polynomial(1), H)
    pks = pubcoeff_to_pks(com, 4)
    assert pks == [com.ges[0]] * 4
    assert pubcoeff_to_pks(com, 0) == []


def test_vss_correctness():
    for t in range(1, 3):
        for n in range(t, 2 * t + 1):
            vss = VSS(rand_polynomial(t))
            secshares = vss.secshares(n)
            assert len(secshares) == n
            com = vss.commit(H)
            assert all(
                verify_secshare(secshares[i], com.pubshare(i), H) for i in range(n)
            )


def test_recover_secret():
    f = Polynomial([Scalar(23), Scalar(42)])
    shares = [f(Scalar(i)) for i in [1, 2, 3]]
    assert recover_secret([1, 2], [shares[0], shares[1]]) == f.coeffs[0]
    assert recover_secret([1, 3], [shares[0], shares[2]]) == f.coeffs[0]
    assert recover_secret([2, 3], [shares[1], shares[2]]) == f.coeffs[0]


###
### Encryption
###


def test_encryption():
    deckey = deckey_gen(random_bytes(32))
    enckey = enckey_gen(deckey)
    share = rand_scalar()
    ct = cipher.encrypt(enckey, 3, share, random_bytes(32))
    assert cipher.decrypt(deckey, 3, ct) == share

    b = cipher.ciphertext_to_bytes(ct)
    assert len(b) == CIPHERTEXT_LEN
    assert cipher.ciphertext_from_bytes(b) == ct

    # Wrong receiver index
    with pytest.raises(DecryptionError):
        cipher.decrypt(deckey, 2, ct)
    # Wrong key
    with pytest.raises(DecryptionError):
        cipher.decrypt(deckey_gen(random_bytes(32)), 3, ct)
    # Corrupted ciphertext
    with pytest.raises(DecryptionError):
        cipher.decrypt(deckey, 3, ct._replace(enc_share=ct.enc_share + Scalar(1)))
    # Other context
    with pytest.raises(DecryptionError):
        HashedElGamalCipher(b"other").decrypt(deckey, 3, ct)


def test_ciphertext_from_bytes_malformed():
    ct = cipher.encrypt(
        enckey_gen(deckey_gen(random_bytes(32))), 0, rand_scalar(), random_bytes(32)
    )
    b = cipher.ciphertext_to_bytes(ct)
    with pytest.raises(ValueError):
        cipher.ciphertext_from_bytes(b[:-1])
    with pytest.raises(ValueError):
        cipher.ciphertext_from_bytes(INVALID_ENCKEY + b[33:])
    with pytest.raises(ValueError):
        cipher.ciphertext_from_bytes(b[:33] + 32 * b"\xff" + b[65:])


def test_validate_enckey():
    cipher.validate_enckey(enckey_gen(deckey_gen(random_bytes(32))))
    with pytest.raises(MalformedPublicKeyError):
        cipher.validate_enckey(INVALID_ENCKEY)
    with pytest.raises(MalformedPublicKeyError):
        cipher.validate_enckey(b"\x02" * 32)


###
### Dealings
###


def test_dealing_structure():
    _, params = setup_receivers(4, 3)
    (dealing,), (vss,) = create_dealings(params, 1)
    assert len(dealing.ciphertexts) == 4
    assert dealing.public_coefficients.t() == 3
    assert dealing.public_coefficients == vss.commit(H)
    nidkg.verify_dealing(params, cipher, dealing)


def test_dealing_serialization():
    _, params = setup_receivers(3, 2)
    (dealing,), _ = create_dealings(params, 1)
    b = dealing.to_bytes(cipher)
    assert nidkg.Dealing.from_bytes(b, cipher) == dealing
    for malformed in [b[:-1], b + b"\x00", b[:8], b""]:
        with pytest.raises(ValueError):
            nidkg.Dealing.from_bytes(malformed, cipher)


def test_dealing_proof_binds_ciphertexts():
    deckeys, params = setup_receivers(3, 2)
    (dealing, other), _ = create_dealings(params, 2)
    ciphertexts = list(dealing.ciphertexts)
    ciphertexts[1] = other.ciphertexts[1]
    with pytest.raises(InvalidSharingProofError):
        nidkg.verify_dealing(params, cipher, dealing._replace(ciphertexts=ciphertexts))
    with pytest.raises(InvalidSharingProofError):
        nidkg.verify_dealing(
            params,
            cipher,
            dealing._replace(zk_proof_correct_sharing=other.zk_proof_correct_sharing),
        )
    proof = dealing.zk_proof_correct_sharing
    assert SharingProof.from_bytes(proof.to_bytes()) == proof


def test_validate_receivers():
    nidkg.validate_receivers({0: b"", 1: b"", 2: b""}, 3)
    for receiver_keys, n, receiver_index in [
        ({0: b"", 1: b"", 3: b""}, 4, 3),
        ({0: b"", 1: b"", 2: b""}, 4, 3),
        ({0: b"", 1: b"", 2: b"", 3: b""}, 3, 3),
        ({1: b"", 2: b""}, 2, 1),
        ({-1: b"", 0: b""}, 2, -1),
    ]:
        with pytest.raises(MisnumberedReceiverError) as excinfo:
            nidkg.validate_receivers(receiver_keys, n)
        assert excinfo.value.receiver_index == receiver_index
        assert excinfo.value.number_of_receivers == n


def test_validate_dealing_misnumbered_receivers():
    _, params = setup_receivers(4, 2)
    (dealing,), _ = create_dealings(params, 1)

    # The dealing addresses receivers 0, 1 and 3 only.
    short = dealing._replace(
        ciphertexts=[dealing.ciphertexts[i] for i in [0, 1, 3]]
    )
    with pytest.raises(MisnumberedReceiverError) as excinfo:
        nidkg.validate_dealing(params, cipher, short)
    assert excinfo.value.receiver_index == 3
    assert excinfo.value.number_of_receivers == 4

    # The error blames the dealing, not the threshold of the round.
    with pytest.raises(MisnumberedReceiverError) as excinfo:
        nidkg.validate_dealing(params._replace(t=4), cipher, short)
    assert excinfo.value.number_of_receivers == 4

    long = dealing._replace(ciphertexts=dealing.ciphertexts + dealing.ciphertexts[:1])
    with pytest.raises(MisnumberedReceiverError) as excinfo:
        nidkg.validate_dealing(params, cipher, long)
    assert excinfo.value.receiver_index == 4
    assert excinfo.value.number_of_receivers == 4

    # The receiver set of the round misses index 2.
    receiver_keys = {i: params.receiver_keys[i] for i in [0, 1, 3]}
    bad_params = params._replace(receiver_keys=receiver_keys)
    with pytest.raises(MisnumberedReceiverError) as excinfo:
        nidkg.validate_dealing(bad_params, cipher, dealing)
    assert excinfo.value.receiver_index == 3
    assert excinfo.value.number_of_receivers == 3

    with pytest.raises(MisnumberedReceiverError):
        nidkg.create_dealing(bad_params, cipher, random_bytes(32))


def test_invalid_threshold():
    _, params = setup_receivers(3, 2)
    for t in [0, -1, 4]:
        with pytest.raises(InvalidThresholdError):
            nidkg.create_dealing(params._replace(t=t), cipher, random_bytes(32))

    (dealing,), _ = create_dealings(params, 1)
    for t in [1, 3]:
        with pytest.raises(InvalidThresholdError):
            nidkg.validate_dealing(params._replace(t=t), cipher, dealing)


def test_malformed_receiver_key():
    _, params = setup_receivers(3, 2)
    (dealing,), _ = create_dealings(params, 1)
    receiver_keys = dict(params.receiver_keys)
    receiver_keys[1] = INVALID_ENCKEY
    bad_params = params._replace(receiver_keys=receiver_keys)
    with pytest.raises(MalformedFsPublicKeyError) as excinfo:
        nidkg.validate_dealing(bad_params, cipher, dealing)
    assert excinfo.value.receiver_index == 1
    assert isinstance(excinfo.value.error, MalformedPublicKeyError)
    with pytest.raises(MalformedFsPublicKeyError):
        nidkg.create_dealing(bad_params, cipher, random_bytes(32))


def test_dealing_for_other_domain():
    deckeys, params = setup_receivers(3, 2)
    other_params = params._replace(domain="other")
    other = nidkg.create_dealing(other_params, cipher, random_bytes(32))
    nidkg.verify_dealing(other_params, cipher, other)
    with pytest.raises(CommitmentMismatchError):
        nidkg.validate_dealing(params, cipher, other)

    (dealing,), _ = create_dealings(params, 1)
    with pytest.raises(CommitmentMismatchError):
        nidkg.aggregate_dealings(cipher, [dealing, other], deckeys[0], 0, 3)


def test_dealing_for_other_domain_is_logged(caplog):
    _, params = setup_receivers(3, 2)
    other = nidkg.create_dealing(
        params._replace(domain="other"), cipher, random_bytes(32)
    )
    with caplog.at_level(logging.DEBUG, logger="cgdkg_ref"):
        with pytest.raises(CommitmentMismatchError):
            nidkg.validate_dealing(params, cipher, other)
    assert "Rejecting dealing" in caplog.text


class FailingCipher(HashedElGamalCipher):
    def encrypt(self, enckey, idx, share, random):
        raise ValueError("encryption failed")


def test_create_dealing_internal_error():
    _, params = setup_receivers(3, 2)
    with pytest.raises(InternalError) as excinfo:
        nidkg.create_dealing(params, FailingCipher(), random_bytes(32))
    assert isinstance(excinfo.value.__cause__, ValueError)


###
### Aggregation
###


@pytest.mark.parametrize("t,n,k", [(1, 1, 1), (1, 3, 2), (2, 3, 3), (3, 5, 3)])
def test_aggregation_consistency(t, n, k):
    deckeys, params = setup_receivers(n, t)
    dealings, vsss = create_dealings(params, k)
    for dealing in dealings:
        nidkg.verify_dealing(params, cipher, dealing)

    results = [
        nidkg.aggregate_dealings(cipher, dealings, deckeys[j], j, n) for j in range(n)
    ]

    group_secret = Scalar.sum(*(vss.secret() for vss in vsss))
    for j, result in enumerate(results):
        expected = Scalar.sum(*(vss.f(Scalar(j + 1)) for vss in vsss))
        assert result.secret_key_share == expected
        assert result.group_public_key == group_secret * H
        assert result.group_public_key == result.combined_commitment.ges[0]
        assert result.partial_public_keys == pubcoeff_to_pks(
            result.combined_commitment, n
        )
        assert verify_secshare(
            result.secret_key_share, result.partial_public_keys[j], H
        )
        # All receivers agree on the public outputs
        assert public_bytes(result) == public_bytes(results[0])

    # Every set of t receivers can recover the group secret
    shares = [result.secret_key_share for result in results]
    for tsubset in combinations(range(1, n + 1), t):
        recovered = recover_secret(list(tsubset), [shares[i - 1] for i in tsubset])
        assert recovered == group_secret


def test_aggregation_empty():
    deckeys, _ = setup_receivers(3, 2)
    result = nidkg.aggregate_dealings(cipher, [], deckeys[1], 1, 3)
    assert result.secret_key_share == Scalar(0)
    assert result.group_public_key.infinity
    assert result.combined_commitment == PublicCoefficients.zero(H)
    assert all(pk.infinity for pk in result.partial_public_keys)
    assert len(result.partial_public_keys) == 3


@pytest.mark.parametrize("max_workers", [None, 3])
def test_aggregation_fails_atomically(max_workers):
    n, t = 5, 3
    deckeys, params = setup_receivers(n, t)
    dealings, _ = create_dealings(params, 3)
    node_index = 2
    ciphertexts = list(dealings[1].ciphertexts)
    ct = ciphertexts[node_index]
    ciphertexts[node_index] = ct._replace(enc_share=ct.enc_share + Scalar(1))
    dealings[1] = dealings[1]._replace(ciphertexts=ciphertexts)

    with pytest.raises(AggregationError) as excinfo:
        nidkg.aggregate_dealings(
            cipher,
            dealings,
            deckeys[node_index],
            node_index,
            n,
            max_workers=max_workers,
        )
    assert excinfo.value.dealing == 1
    assert isinstance(excinfo.value.__cause__, DecryptionError)

    # Excluding the offending dealing makes aggregation succeed
    result = nidkg.aggregate_dealings(
        cipher, [dealings[0], dealings[2]], deckeys[node_index], node_index, n
    )
    assert verify_secshare(
        result.secret_key_share, result.partial_public_keys[node_index], H
    )


def test_aggregation_wrong_deckey():
    deckeys, params = setup_receivers(3, 2)
    dealings, _ = create_dealings(params, 2)
    with pytest.raises(AggregationError) as excinfo:
        nidkg.aggregate_dealings(cipher, dealings, deckeys[0], 1, 3)
    assert excinfo.value.dealing == 0


def test_aggregation_order_independence():
    n = 4
    deckeys, params = setup_receivers(n, 2)
    (A, B, C), _ = create_dealings(params, 3)
    r1 = nidkg.aggregate_dealings(cipher, [A, B, C], deckeys[3], 3, n)
    r2 = nidkg.aggregate_dealings(cipher, [C, A, B], deckeys[3], 3, n)
    assert r1 == r2
    assert r1.secret_key_share.to_bytes() == r2.secret_key_share.to_bytes()
    assert public_bytes(r1) == public_bytes(r2)


def test_aggregation_concurrent():
    n = 3
    deckeys, params = setup_receivers(n, 2)
    dealings, _ = create_dealings(params, 3)
    sequential = nidkg.aggregate_dealings(cipher, dealings, deckeys[0], 0, n)
    concurrent = nidkg.aggregate_dealings(
        cipher, dealings, deckeys[0], 0, n, max_workers=2
    )
    assert sequential == concurrent


def test_aggregation_invalid_arguments():
    deckeys, params = setup_receivers(3, 2)
    dealings, _ = create_dealings(params, 1)
    for node_index in [-1, 3]:
        with pytest.raises(ValueError):
            nidkg.aggregate_dealings(cipher, dealings, deckeys[0], node_index, 3)
    with pytest.raises(ValueError):
        nidkg.aggregate_dealings(cipher, dealings, deckeys[0], 0, 4)


def test_aggregation_does_not_mutate_inputs():
    deckeys, params = setup_receivers(3, 2)
    dealings, _ = create_dealings(params, 2)
    encoded = [dealing.to_bytes(cipher) for dealing in dealings]
    nidkg.aggregate_dealings(cipher, dealings, deckeys[0], 0, 3)
    assert [dealing.to_bytes(cipher) for dealing in dealings] == encoded


def test_resharing():
    deckeys, params = setup_receivers(3, 2)
    secrets = [rand_scalar() for _ in range(2)]
    dealings, _ = create_dealings(params, 2, secrets)
    result = nidkg.aggregate_dealings(cipher, dealings, deckeys[0], 0, 3)
    assert result.group_public_key == Scalar.sum(*secrets) * H


def test_aggregation_result_redacts_secret(caplog):
    deckeys, params = setup_receivers(3, 2)
    dealings, _ = create_dealings(params, 2)
    with caplog.at_level(logging.DEBUG, logger="cgdkg_ref"):
        result = nidkg.aggregate_dealings(cipher, dealings, deckeys[2], 2, 3)
    secret_hex = result.secret_key_share.to_bytes().hex()
    assert "secret_key_share=<redacted>" in repr(result)
    assert secret_hex not in repr(result)
    assert "Aggregated 2 dealings for node 2 of 3" in caplog.text
    assert secret_hex not in caplog.text


###
### Full round
###


def run_example(t: int, n: int, faulty_idx: Optional[int]):
    deckeys = [deckey_gen(random_bytes(32)) for _ in range(n)]
    receiver_keys: Dict[int, bytes] = {i: enckey_gen(deckeys[i]) for i in range(n)}
    params = nidkg.DealingParams(receiver_keys, t)
    return simulate_nidkg_full(deckeys, params, faulty_idx)


@pytest.mark.parametrize("t,n", [(1, 1), (1, 2), (2, 2), (2, 3), (2, 5)])
def test_example_round(t, n):
    rets = run_example(t, n, None)
    assert len(rets) == n
    for j, (result, excluded) in enumerate(rets):
        assert excluded == []
        assert public_bytes(result) == public_bytes(rets[0][0])
        assert verify_secshare(
            result.secret_key_share, result.partial_public_keys[j], H
        )


def test_example_round_with_faulty_dealer():
    rets = run_example(2, 3, 1)
    for result, excluded in rets:
        assert excluded == [1]
        assert public_bytes(result) == public_bytes(rets[0][0])

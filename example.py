#!/usr/bin/env python3

"""Example of a full NIDKG round"""

from typing import Tuple, List, Optional
import asyncio
import logging
import pprint
from random import randint
from secrets import token_bytes as random_bytes
import sys
import argparse

from secp256k1lab.secp256k1 import Scalar

from cgdkg_ref.encryption import HashedElGamalCipher, deckey_gen, enckey_gen
from cgdkg_ref.nidkg import (
    create_dealing,
    verify_dealing,
    aggregate_dealings,
    DealingParams,
    Dealing,
    AggregationResult,
    DealingError,
)
from cgdkg_ref.util import ProtocolError

#
# Network mock to simulate a broadcast channel
#


class BroadcastChannel:
    def __init__(self, n):
        self.n = n
        self.queues = []
        for i in range(n):
            self.queues += [asyncio.Queue()]

    # Send m to every node, including the sender
    def broadcast(self, m):
        for i in range(self.n):
            self.queues[i].put_nowait(m)

    async def receive(self, i):
        item = await self.queues[i].get()
        return item


#
# Helper functions
#


def pphex(thing):
    """Pretty print an object with bytes as hex strings"""

    def hexlify(thing):
        if isinstance(thing, bytes):
            return thing.hex()
        if isinstance(thing, dict):
            return {k: hexlify(v) for k, v in thing.items()}
        if hasattr(thing, "_asdict"):  # NamedTuple
            return hexlify(thing._asdict())
        if isinstance(thing, List):
            return [hexlify(v) for v in thing]
        return thing

    pprint.pp(hexlify(thing))


def public_outputs(result: AggregationResult) -> dict:
    return {
        "group_public_key": result.group_public_key.to_bytes_compressed(),
        "partial_public_keys": [
            pk.to_bytes_compressed() for pk in result.partial_public_keys
        ],
    }


#
# Protocol parties
#


async def receive_and_aggregate(
    chan: BroadcastChannel,
    idx: int,
    deckey: bytes,
    params: DealingParams,
    cipher: HashedElGamalCipher,
) -> Tuple[AggregationResult, List[int]]:
    n = len(params.receiver_keys)
    received = {}
    for _ in range(n):
        dealer, msg = await chan.receive(idx)
        received[dealer] = msg

    # Exclude dealers whose dealings are malformed or whose proof does not
    # verify, and aggregate the rest.
    valid_dealings = []
    excluded = []
    for dealer in sorted(received):
        try:
            d = Dealing.from_bytes(received[dealer], cipher, params.domain)
            verify_dealing(params, cipher, d)
        except (ValueError, DealingError, ProtocolError):
            excluded.append(dealer)
            continue
        valid_dealings.append(d)

    result = aggregate_dealings(
        cipher, valid_dealings, deckey, idx, n, domain=params.domain
    )
    return result, excluded


async def node(
    chan: BroadcastChannel,
    idx: int,
    deckey: bytes,
    params: DealingParams,
    cipher: HashedElGamalCipher,
) -> Tuple[AggregationResult, List[int]]:
    # Every node is a dealer and a receiver.
    dealing = create_dealing(params, cipher, random_bytes(32))
    chan.broadcast((idx, dealing.to_bytes(cipher)))
    return await receive_and_aggregate(chan, idx, deckey, params, cipher)


# This is a dummy dealer used to demonstrate the exclusion of faulty dealers.
# It picks a random victim and replaces the victim's ciphertext with an
# encryption of a share that does not match its commitment.
async def faulty_node(
    chan: BroadcastChannel,
    idx: int,
    deckey: bytes,
    params: DealingParams,
    cipher: HashedElGamalCipher,
) -> Tuple[AggregationResult, List[int]]:
    n = len(params.receiver_keys)
    dealing = create_dealing(params, cipher, random_bytes(32))
    victim = randint(0, n - 1)
    ciphertexts = list(dealing.ciphertexts)
    ciphertexts[victim] = cipher.encrypt(
        params.receiver_keys[victim], victim, Scalar(17), random_bytes(32)
    )
    dealing = dealing._replace(ciphertexts=ciphertexts)
    chan.broadcast((idx, dealing.to_bytes(cipher)))

    # The faulty node still takes part as an honest receiver.
    return await receive_and_aggregate(chan, idx, deckey, params, cipher)


#
# NIDKG round
#


def simulate_nidkg_full(
    deckeys: List[bytes], params: DealingParams, faulty_idx: Optional[int]
) -> List[Tuple[AggregationResult, List[int]]]:
    n = len(deckeys)
    assert n == len(params.receiver_keys)
    cipher = HashedElGamalCipher(params.domain.encode())

    async def session():
        chan = BroadcastChannel(n)
        coroutines = [
            node(chan, i, deckeys[i], params, cipher)
            if i != faulty_idx
            else faulty_node(chan, i, deckeys[i], params, cipher)
            for i in range(n)
        ]
        return await asyncio.gather(*coroutines)

    outputs = asyncio.run(session())
    return outputs


def main():
    parser = argparse.ArgumentParser(description="NIDKG example")
    parser.add_argument(
        "--faulty-dealer",
        action="store_true",
        help="When this flag is set, one random dealer will send an invalid dealing, which all receivers will exclude.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "t", nargs="?", type=int, default=2, help="Threshold [default = 2]"
    )
    parser.add_argument(
        "n", nargs="?", type=int, default=3, help="Number of nodes [default = 3]"
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    t = args.t
    n = args.n
    if args.faulty_dealer:
        faulty_idx = randint(0, n - 1)
    else:
        faulty_idx = None

    print("====== NIDKG example round ======")
    print(f"Using n = {n} nodes and a threshold of t = {t}.")
    if faulty_idx is not None:
        print(f"Dealer {faulty_idx} is faulty.")
    print()

    deckeys = [deckey_gen(random_bytes(32)) for _ in range(n)]
    params = DealingParams({i: enckey_gen(deckeys[i]) for i in range(n)}, t)

    print("=== Round parameters ===")
    pphex(params)
    print()

    rets = simulate_nidkg_full(deckeys, params, faulty_idx)

    for i in range(n):
        result, excluded = rets[i]
        print(f"=== Node {i}'s public output ===")
        if excluded:
            print(f"Excluded dealers: {excluded}")
        pphex(public_outputs(result))
        print()

    # All nodes must agree on the public outputs
    assert all(public_outputs(ret[0]) == public_outputs(rets[0][0]) for ret in rets)
    print("All nodes agree on the group public key and the partial public keys.")


if __name__ == "__main__":
    sys.exit(main())

"""Typed sequencer events.

Raw logs are decoded exactly once, at the subscription boundary, into one of
the frozen dataclasses below. Handlers never see undecoded log data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from chain.contracts import decode_network_tag
from errors import ContractViolationError


@dataclass(frozen=True)
class NetworkAdded:
    network: bytes
    window_size: int

    @property
    def name(self) -> str:
        return decode_network_tag(self.network)


@dataclass(frozen=True)
class NetworkRemoved:
    network: bytes

    @property
    def name(self) -> str:
        return decode_network_tag(self.network)


@dataclass(frozen=True)
class JobAdded:
    job: str


@dataclass(frozen=True)
class JobRemoved:
    job: str


SequencerEvent = Union[NetworkAdded, NetworkRemoved, JobAdded, JobRemoved]


def _topic(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))


ADD_NETWORK_TOPIC = _topic("AddNetwork(bytes32,uint256)")
REMOVE_NETWORK_TOPIC = _topic("RemoveNetwork(bytes32)")
ADD_JOB_TOPIC = _topic("AddJob(address)")
REMOVE_JOB_TOPIC = _topic("RemoveJob(address)")


def _network_added(data: bytes) -> SequencerEvent:
    network, window_size = decode(["bytes32", "uint256"], data)
    return NetworkAdded(network=bytes(network), window_size=int(window_size))


def _network_removed(data: bytes) -> SequencerEvent:
    (network,) = decode(["bytes32"], data)
    return NetworkRemoved(network=bytes(network))


def _job_added(data: bytes) -> SequencerEvent:
    (job,) = decode(["address"], data)
    return JobAdded(job=Web3.to_checksum_address(job))


def _job_removed(data: bytes) -> SequencerEvent:
    (job,) = decode(["address"], data)
    return JobRemoved(job=Web3.to_checksum_address(job))


_DECODERS: dict[bytes, Callable[[bytes], SequencerEvent]] = {
    ADD_NETWORK_TOPIC: _network_added,
    REMOVE_NETWORK_TOPIC: _network_removed,
    ADD_JOB_TOPIC: _job_added,
    REMOVE_JOB_TOPIC: _job_removed,
}

SEQUENCER_TOPICS: tuple[bytes, ...] = tuple(_DECODERS)


def decode_log(log: dict[str, Any]) -> SequencerEvent | None:
    """Decode a raw sequencer log. Logs with an unknown topic0 decode to None."""
    topics = log.get("topics") or []
    if not topics:
        return None
    decoder = _DECODERS.get(bytes(topics[0]))
    if decoder is None:
        return None
    try:
        return decoder(bytes(log.get("data") or b""))
    except DecodingError as e:
        raise ContractViolationError(
            f"Malformed sequencer log data: {e}",
            code="MALFORMED_EVENT",
            details={"block": log.get("blockNumber"), "log_index": log.get("logIndex")},
        ) from e

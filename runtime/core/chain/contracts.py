"""Contract ABIs and identifiers used by the keeper.

Only the fragments the keeper actually calls are declared:
- Sequencer: window/whitelist/job getters and the four membership events.
- Upkeep job: the `work(address,bytes)` entrypoint.
- Workable job: the `workable(bytes32)` predicate.
"""

from __future__ import annotations

from typing import Any

SEQUENCER_ABI: list[dict[str, Any]] = [
    {"type": "function", "name": "totalWindowSize", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "numNetworks", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {
        "type": "function",
        "name": "networkAt",
        "stateMutability": "view",
        "inputs": [{"name": "index", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {"type": "function", "name": "numJobs", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {
        "type": "function",
        "name": "jobAt",
        "stateMutability": "view",
        "inputs": [{"name": "index", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "event",
        "name": "AddNetwork",
        "anonymous": False,
        "inputs": [
            {"name": "network", "type": "bytes32", "indexed": False},
            {"name": "windowSize", "type": "uint256", "indexed": False},
        ],
    },
    {"type": "event", "name": "RemoveNetwork", "anonymous": False, "inputs": [{"name": "network", "type": "bytes32", "indexed": False}]},
    {"type": "event", "name": "AddJob", "anonymous": False, "inputs": [{"name": "job", "type": "address", "indexed": False}]},
    {"type": "event", "name": "RemoveJob", "anonymous": False, "inputs": [{"name": "job", "type": "address", "indexed": False}]},
]

UPKEEP_JOB_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "work",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "job", "type": "address"}, {"name": "args", "type": "bytes"}],
        "outputs": [],
    },
]

WORKABLE_JOB_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "workable",
        "stateMutability": "view",
        "inputs": [{"name": "network", "type": "bytes32"}],
        "outputs": [{"name": "canWork", "type": "bool"}, {"name": "args", "type": "bytes"}],
    },
]


def encode_network_tag(name: str) -> bytes:
    """Encode a network name the way the sequencer stores it (bytes32, right padded).

    The last byte stays a NUL terminator, so names are limited to 31 bytes.
    """
    raw = name.encode("utf-8")
    if not raw:
        raise ValueError("network tag must not be empty")
    if len(raw) > 31:
        raise ValueError(f"network tag too long for bytes32 ({len(raw)} > 31 bytes): {name}")
    return raw.ljust(32, b"\x00")


def decode_network_tag(tag: bytes) -> str:
    return bytes(tag).rstrip(b"\x00").decode("utf-8", errors="replace")

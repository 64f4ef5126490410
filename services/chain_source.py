"""
ChainLogSource: web3.py wrapper for reading escrow contract logs.
Handles head lookups, ranged log retrieval and ABI decoding.
Every RPC failure surfaces as ProviderError; undecodable logs as DecodeError.
"""
import json
import logging
import os
from dataclasses import dataclass, field

from web3 import Web3

from config import Config

logger = logging.getLogger('indexer.chain')


class ProviderError(Exception):
    """RPC / network failure talking to the chain."""


class DecodeError(Exception):
    """A log that does not match any known escrow event."""


# Escrow contract events (only the event fragments are needed for indexing)
ESCROW_EVENTS_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "agentId", "type": "string"},
            {"indexed": False, "name": "name", "type": "string"},
            {"indexed": True, "name": "wallet", "type": "address"},
        ],
        "name": "AgentRegistered",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "bytes32"},
            {"indexed": False, "name": "title", "type": "string"},
            {"indexed": False, "name": "posterId", "type": "string"},
            {"indexed": False, "name": "reward", "type": "uint256"},
        ],
        "name": "JobPosted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "bytes32"},
            {"indexed": False, "name": "claimerId", "type": "string"},
        ],
        "name": "JobClaimed",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "bytes32"},
            {"indexed": False, "name": "submissionHash", "type": "bytes32"},
        ],
        "name": "WorkSubmitted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "jobId", "type": "bytes32"},
            {"indexed": False, "name": "approved", "type": "bool"},
        ],
        "name": "JobVerified",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "jobId", "type": "bytes32"}],
        "name": "JobCancelled",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "jobId", "type": "bytes32"}],
        "name": "ClaimExpired",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "jobId", "type": "bytes32"}],
        "name": "VerifyExpired",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "jobId", "type": "bytes32"}],
        "name": "EmergencyRelease",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "previousOwner", "type": "address"},
            {"indexed": True, "name": "newOwner", "type": "address"},
        ],
        "name": "OwnershipTransferred",
        "type": "event",
    },
]


@dataclass
class DecodedEvent:
    event_name: str
    args: dict = field(default_factory=dict)
    block_number: int = 0
    tx_hash: str = ''
    log_index: int = 0


def load_abi(path):
    """Load an ABI from a raw JSON list or a Foundry/Hardhat artifact with an `abi` key."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        return data.get('abi', [])
    return data


def event_topic(event_abi) -> str:
    """topic0 for an event fragment, as 0x-prefixed lower-case hex."""
    types = ','.join(i['type'] for i in event_abi.get('inputs', []))
    signature = f"{event_abi['name']}({types})"
    return Web3.to_hex(Web3.keccak(text=signature))


def _hex(value) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value).lower()


def _normalize_value(value):
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return value


def normalize_args(args) -> dict:
    """Plain-dict copy of decoded args: bytes become 0x-hex, bytes32 ids lower-cased."""
    out = {k: _normalize_value(v) for k, v in dict(args).items()}
    if isinstance(out.get('jobId'), str):
        out['jobId'] = out['jobId'].lower()
    return out


class ChainLogSource:
    def __init__(self, rpc_url=None, escrow_address=None, abi=None, w3=None, timeout=None):
        self.rpc_url = rpc_url or Config.RPC_URL
        self.escrow_address = escrow_address or Config.ESCROW_ADDRESS
        timeout = timeout or Config.RPC_TIMEOUT_SECONDS

        if abi is None and Config.ESCROW_ABI_PATH and os.path.exists(Config.ESCROW_ABI_PATH):
            abi = load_abi(Config.ESCROW_ABI_PATH)
            logger.info("Loaded escrow ABI from %s", Config.ESCROW_ABI_PATH)
        self.abi = abi or ESCROW_EVENTS_ABI

        self.w3 = w3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={'timeout': timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.escrow_address),
            abi=self.abi,
        )
        self._topics = {
            event_topic(item): item['name']
            for item in self.abi
            if item.get('type') == 'event' and not item.get('anonymous')
        }

    def __repr__(self):
        return f"ChainLogSource(rpc_url={self.rpc_url!r}, escrow={self.escrow_address})"

    # --- Read functions ---

    def current_height(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as e:
            raise ProviderError(f"block_number failed: {e}") from e

    def fetch_logs(self, address, from_block: int, to_block: int) -> list:
        try:
            return list(self.w3.eth.get_logs({
                'address': Web3.to_checksum_address(address),
                'fromBlock': from_block,
                'toBlock': to_block,
            }))
        except Exception as e:
            raise ProviderError(f"get_logs {from_block}-{to_block} failed: {e}") from e

    def decode(self, log) -> DecodedEvent:
        topics = log.get('topics') or []
        if not topics:
            raise DecodeError("log has no topics")
        topic0 = _hex(topics[0])
        name = self._topics.get(topic0)
        if name is None:
            raise DecodeError(f"unknown topic {topic0}")
        try:
            decoded = getattr(self.contract.events, name)().process_log(log)
        except Exception as e:
            raise DecodeError(f"{name}: {e}") from e

        tx_hash = log.get('transactionHash')
        return DecodedEvent(
            event_name=name,
            args=normalize_args(decoded['args']),
            block_number=int(log['blockNumber']),
            tx_hash=_hex(tx_hash) if tx_hash is not None else '',
            log_index=int(log['logIndex']),
        )


# Singleton, constructed lazily from Config
_source_instance = None

def get_chain_source() -> ChainLogSource:
    global _source_instance
    if _source_instance is None:
        _source_instance = ChainLogSource()
    return _source_instance

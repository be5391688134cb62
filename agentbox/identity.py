"""ERC-721 agent identity: descriptor documents and registry contract calls."""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

import requests
from web3 import Web3

from .chain import ChainClient, ChainError

logger = logging.getLogger(__name__)

SERVER_ID_TRAIT = "agentbox:serverId"
DATA_URI_PREFIX = "data:application/json;base64,"
DEFAULT_DESCRIPTION = (
    "Dedicated AI agent gateway powered by OpenClaw and AgentBox. Includes an HTTPS runtime, "
    "web terminal access, and an EVM wallet-backed on-chain identity."
)

IDENTITY_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "string", "name": "uri", "type": "string"},
        ],
        "name": "mint",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "from", "type": "address"},
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
        ],
        "name": "safeTransferFrom",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
            {"internalType": "string", "name": "uri", "type": "string"},
        ],
        "name": "setTokenURI",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "tokenURI",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "owner", "type": "address"},
            {"internalType": "uint256", "name": "index", "type": "uint256"},
        ],
        "name": "tokenOfOwnerByIndex",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "from", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]


def build_services(hostname: str, vm_wallet: str, chain_id: int) -> List[Dict[str, Any]]:
    return [
        {
            "name": "OASF",
            "endpoint": "https://github.com/agntcy/oasf/",
            "version": "v0.8.0",
            "skills": [
                "natural_language_processing/natural_language_generation/dialogue_generation",
                "tool_interaction/tool_use_planning",
                "agent_orchestration/task_decomposition",
            ],
            "domains": [
                "technology/software_engineering/apis_integration",
                "technology/blockchain/blockchain",
            ],
        },
        # CAIP-10 account id
        {"name": "agentWallet", "endpoint": f"eip155:{chain_id}:{vm_wallet}"},
        {"name": "web", "endpoint": f"https://{hostname}"},
    ]


def build_descriptor(
    *,
    name: str,
    hostname: str,
    vm_wallet: str,
    server_id: int,
    chain_id: int,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description or DEFAULT_DESCRIPTION,
        "image": f"https://api.dicebear.com/9.x/bottts/svg?seed={name}",
        "external_url": f"https://{hostname}",
        "services": build_services(hostname, vm_wallet, chain_id),
        "supportedTrust": ["reputation"],
        "active": True,
        "attributes": [{"trait_type": SERVER_ID_TRAIT, "value": str(server_id)}],
    }


def extract_server_id(descriptor: Any) -> Optional[int]:
    """Return the embedded server id marker, or None when absent or not all digits."""
    if not isinstance(descriptor, dict):
        return None
    for attribute in descriptor.get("attributes") or []:
        if not isinstance(attribute, dict) or attribute.get("trait_type") != SERVER_ID_TRAIT:
            continue
        value = str(attribute.get("value", "")).strip()
        if value.isdigit():
            return int(value)
        return None
    return None


class IdentityRegistry:
    def __init__(
        self,
        chain: ChainClient,
        contract_address: str,
        *,
        upload_url: Optional[str] = None,
        http_timeout: float = 15.0,
    ) -> None:
        self.chain = chain
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.upload_url = upload_url
        self.http_timeout = http_timeout
        self._http = requests.Session()

    def _contract(self):
        return self.chain.web3.eth.contract(address=self.contract_address, abi=IDENTITY_REGISTRY_ABI)

    @property
    def custodian(self) -> str:
        sender = self.chain.sender
        if not sender:
            raise ChainError("Custodial wallet is not configured")
        return sender

    def upload_descriptor(self, descriptor: Dict[str, Any]) -> str:
        if not self.upload_url:
            encoded = base64.b64encode(json.dumps(descriptor, separators=(",", ":")).encode("utf-8"))
            return DATA_URI_PREFIX + encoded.decode("ascii")
        try:
            response = self._http.post(self.upload_url, json=descriptor, timeout=self.http_timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ChainError(f"Descriptor upload failed: {exc}") from exc
        uri = (body.get("uri") or body.get("url")) if isinstance(body, dict) else None
        if not uri:
            raise ChainError("Descriptor upload returned no uri")
        return str(uri)

    def mint_identity(self, descriptor_uri: str) -> str:
        """Mint to the custodial wallet and return the new token id."""
        custodian = self.custodian
        contract = self._contract()
        data = contract.encode_abi("mint", args=[custodian, descriptor_uri])
        tx_hash = self.chain.send_transaction(to=self.contract_address, data=data)
        if not tx_hash:
            raise ChainError("Minting requires a live custodial signer")
        receipt = self.chain.wait_for_receipt(tx_hash)
        for log in contract.events.Transfer().process_receipt(receipt):
            if int(log["args"]["from"], 16) == 0:
                return str(log["args"]["tokenId"])
        raise ChainError(f"Mint tx {tx_hash} emitted no Transfer event")

    def transfer_identity(self, token_id: str, to: str) -> Optional[str]:
        custodian = self.custodian
        data = self._contract().encode_abi(
            "safeTransferFrom",
            args=[custodian, Web3.to_checksum_address(to), int(token_id)],
        )
        tx_hash = self.chain.send_transaction(to=self.contract_address, data=data)
        if tx_hash:
            self.chain.wait_for_receipt(tx_hash)
        return tx_hash

    def set_token_uri(self, token_id: str, uri: str) -> Optional[str]:
        data = self._contract().encode_abi("setTokenURI", args=[int(token_id), uri])
        tx_hash = self.chain.send_transaction(to=self.contract_address, data=data)
        if tx_hash:
            self.chain.wait_for_receipt(tx_hash)
        return tx_hash

    def owner_of(self, token_id: str) -> str:
        try:
            owner = self._contract().functions.ownerOf(int(token_id)).call()
        except Exception as exc:
            raise ChainError(f"ownerOf({token_id}) failed: {exc}") from exc
        return str(owner).lower()

    def owned_tokens_of(self, wallet: str) -> List[str]:
        contract = self._contract()
        owner = Web3.to_checksum_address(wallet)
        try:
            balance = int(contract.functions.balanceOf(owner).call())
            return [str(contract.functions.tokenOfOwnerByIndex(owner, index).call()) for index in range(balance)]
        except Exception as exc:
            raise ChainError(f"Token enumeration for {wallet} failed: {exc}") from exc

    def load_identity(self, token_id: str) -> Dict[str, Any]:
        try:
            uri = str(self._contract().functions.tokenURI(int(token_id)).call())
        except Exception as exc:
            raise ChainError(f"tokenURI({token_id}) failed: {exc}") from exc
        if uri.startswith(DATA_URI_PREFIX):
            try:
                return json.loads(base64.b64decode(uri[len(DATA_URI_PREFIX) :]))
            except ValueError as exc:
                raise ChainError(f"Token {token_id} has an unreadable inline descriptor") from exc
        if uri.startswith(("http://", "https://")):
            try:
                response = self._http.get(uri, timeout=self.http_timeout)
                response.raise_for_status()
                return response.json()
            except (requests.RequestException, ValueError) as exc:
                raise ChainError(f"Descriptor fetch for token {token_id} failed: {exc}") from exc
        raise ChainError(f"Token {token_id} has unsupported uri scheme")


__all__ = [
    "IDENTITY_REGISTRY_ABI",
    "IdentityRegistry",
    "SERVER_ID_TRAIT",
    "build_descriptor",
    "extract_server_id",
]

"""Custodial wallet transfers built on web3.py."""
from __future__ import annotations

import logging
import threading
from decimal import Decimal
from typing import Any, Optional

from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .signer import Signer

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18

ERC20_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class ChainError(RuntimeError):
    pass


class ChainClient:
    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        signer: Optional[Signer] = None,
        dry_run: bool = False,
        receipt_timeout: int = 180,
    ) -> None:
        self.web3 = Web3(Web3.HTTPProvider(rpc_url))
        # Base and other OP-stack rollups return extraData longer than mainnet allows.
        self.web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.chain_id = chain_id
        self.dry_run = dry_run
        self.receipt_timeout = receipt_timeout
        self._signer = signer
        # Funding transfers run concurrently from one sender; nonces must not collide.
        self._nonce_lock = threading.Lock()
        if signer is None:
            logger.info("Chain client running without a custodial key (dry-run=%s)", dry_run)

    @property
    def sender(self) -> Optional[str]:
        if self._signer is None:
            return None
        return self._signer.address

    def send_transaction(self, *, to: str, value_wei: int = 0, data: Optional[str] = None) -> Optional[str]:
        if value_wei < 0:
            raise ValueError("value_wei must be non-negative")
        if not self._signer or self.dry_run:
            logger.info(
                "Dry-run transaction: would send tx to %s (value=%s wei sender=%s data=%s)",
                to,
                value_wei,
                self.sender,
                "yes" if data else "no",
            )
            return None

        sender = self.sender
        try:
            to_checksum = Web3.to_checksum_address(to)
        except ValueError as exc:
            raise ChainError(f"Invalid recipient address {to}") from exc

        estimate_payload: dict[str, Any] = {"from": sender, "to": to_checksum, "value": value_wei}
        if data:
            estimate_payload["data"] = data

        try:
            with self._nonce_lock:
                gas_price = self.web3.eth.gas_price
                try:
                    gas_limit = int(self.web3.eth.estimate_gas(estimate_payload))
                except Exception as exc:
                    logger.warning("Gas estimation failed for tx to %s: %s", to_checksum, exc)
                    gas_limit = 21_000 if not data else 300_000
                gas_limit = max(21_000, gas_limit)
                nonce = self.web3.eth.get_transaction_count(sender, block_identifier="pending")
                tx: dict[str, Any] = {
                    "chainId": self.chain_id,
                    "nonce": nonce,
                    "to": to_checksum,
                    "value": value_wei,
                    "gas": gas_limit,
                }
                if data:
                    tx["data"] = data
                try:
                    priority_fee = self.web3.eth.max_priority_fee
                except Exception:
                    priority_fee = gas_price
                tx["maxPriorityFeePerGas"] = priority_fee
                tx["maxFeePerGas"] = max(gas_price, priority_fee) * 2

                raw_tx = self._signer.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        except Exception as exc:
            raise ChainError(f"Transaction to {to_checksum} failed: {exc}") from exc
        logger.info("Submitted tx %s to %s (value=%s wei)", tx_hash.hex(), to_checksum, value_wei)
        return tx_hash.hex()

    def wait_for_receipt(self, tx_hash: str) -> Any:
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as exc:
            raise ChainError(f"Timed out waiting for tx receipt {tx_hash}: {exc}") from exc
        if int(getattr(receipt, "status", 0) or 0) != 1:
            raise ChainError(f"Transaction {tx_hash} reverted")
        return receipt

    def transfer_native(self, to: str, amount_eth: Decimal) -> Optional[str]:
        value_wei = int(Decimal(amount_eth) * WEI_PER_ETH)
        if value_wei <= 0:
            logger.info("Skipping zero-value transfer to %s", to)
            return None
        tx_hash = self.send_transaction(to=to, value_wei=value_wei)
        if tx_hash:
            self.wait_for_receipt(tx_hash)
        return tx_hash

    def transfer_token(self, token: str, to: str, units: int) -> Optional[str]:
        if units <= 0:
            logger.info("Skipping zero-unit token transfer to %s", to)
            return None
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        data = contract.encode_abi("transfer", args=[Web3.to_checksum_address(to), int(units)])
        tx_hash = self.send_transaction(to=token, data=data)
        if tx_hash:
            self.wait_for_receipt(tx_hash)
        return tx_hash


__all__ = ["ChainClient", "ChainError", "ERC20_ABI", "WEI_PER_ETH"]

"""Custodial hot wallet used to fund VMs and mint identities."""
from __future__ import annotations

from typing import Any, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount


class SignerError(RuntimeError):
    pass


class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx: dict[str, Any]) -> bytes: ...


class LocalSigner:
    """In-process key; holds the custodial wallet for every instance."""

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return bytes(self._account.sign_transaction(tx).raw_transaction)


def load_signer(private_key: str) -> LocalSigner:
    candidate = (private_key or "").strip()
    if candidate and not candidate.startswith("0x"):
        candidate = "0x" + candidate
    try:
        return LocalSigner(Account.from_key(candidate))
    except (ValueError, TypeError) as exc:
        raise SignerError("CUSTODIAL_PRIVATE_KEY is not a valid private key") from exc


__all__ = ["LocalSigner", "Signer", "SignerError", "load_signer"]

"""Wallet-signature sign-in and bearer token resolution."""
from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import jwt
from eth_account import Account
from eth_account.messages import encode_defunct

from .instances import AgentboxError

logger = logging.getLogger(__name__)

OPERATOR_OWNER = "operator"
JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = 24 * 60 * 60
MAX_SIGNATURE_AGE_MS = 5 * 60 * 1000
MAX_CLOCK_SKEW_MS = 60 * 1000


def sign_in_message(timestamp: int) -> str:
    return f"Sign in to AgentBox\nTimestamp: {timestamp}"


def normalize_wallet(value: Optional[str]) -> str:
    candidate = (value or "").strip()
    if len(candidate) != 42 or not candidate.startswith("0x"):
        raise AgentboxError("walletAddress must be a 0x-prefixed 20-byte hex address", code="invalid_wallet")
    try:
        bytes.fromhex(candidate[2:])
    except ValueError as exc:
        raise AgentboxError("walletAddress must be a 0x-prefixed 20-byte hex address", code="invalid_wallet") from exc
    return candidate.lower()


@dataclass(frozen=True)
class Identity:
    wallet: Optional[str]
    is_operator: bool = False

    @property
    def actor_type(self) -> str:
        return "operator" if self.is_operator else "wallet"

    @property
    def actor_id(self) -> str:
        return self.wallet or OPERATOR_OWNER


class AuthGate:
    def __init__(self, settings: Any) -> None:
        self.settings = settings

    def _jwt_secret(self) -> str:
        secret = getattr(self.settings, "jwt_secret", None)
        if not secret:
            raise AgentboxError("JWT signing is not configured", status_code=503, code="auth_unconfigured")
        return secret

    def sign_in(
        self,
        wallet_address: str,
        signature: str,
        timestamp: int,
        *,
        now_ms: Optional[int] = None,
    ) -> Tuple[str, bool]:
        wallet = normalize_wallet(wallet_address)
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        if now_ms - timestamp > MAX_SIGNATURE_AGE_MS:
            raise AgentboxError("Sign-in timestamp has expired", code="timestamp_expired")
        if timestamp - now_ms > MAX_CLOCK_SKEW_MS:
            raise AgentboxError("Sign-in timestamp is in the future", code="timestamp_in_future")

        message = encode_defunct(text=sign_in_message(timestamp))
        try:
            recovered = Account.recover_message(message, signature=signature)
        except Exception as exc:
            logger.info("Signature recovery failed for %s: %s", wallet, exc)
            raise AgentboxError("Invalid signature", status_code=401, code="invalid_signature") from exc
        if recovered.lower() != wallet:
            raise AgentboxError("Invalid signature", status_code=401, code="invalid_signature")

        issued_at = int(now_ms // 1000)
        token = jwt.encode(
            {"sub": wallet, "iat": issued_at, "exp": issued_at + TOKEN_TTL_SECONDS},
            self._jwt_secret(),
            algorithm=JWT_ALGORITHM,
        )
        return token, self.is_admin(Identity(wallet=wallet))

    def resolve(self, bearer: Optional[str]) -> Identity:
        if not bearer:
            raise AgentboxError("Bearer token required", status_code=401, code="unauthorized")
        operator_token = getattr(self.settings, "operator_token", None)
        if operator_token and hmac.compare_digest(bearer.encode("utf-8"), operator_token.encode("utf-8")):
            return Identity(wallet=None, is_operator=True)

        secret = getattr(self.settings, "jwt_secret", None)
        if not secret:
            raise AgentboxError("Invalid or expired token", status_code=401, code="unauthorized")
        try:
            claims = jwt.decode(
                bearer,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "sub"]},
            )
        except jwt.PyJWTError as exc:
            raise AgentboxError("Invalid or expired token", status_code=401, code="unauthorized") from exc
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AgentboxError("Invalid or expired token", status_code=401, code="unauthorized")
        return Identity(wallet=subject.lower())

    def is_admin(self, identity: Identity) -> bool:
        if identity.is_operator:
            return True
        treasury = getattr(self.settings, "treasury_address", None)
        return bool(treasury and identity.wallet and identity.wallet == treasury.lower())

    def is_owner(self, row: Any, identity: Identity) -> bool:
        if self.is_admin(identity):
            return True
        return identity.wallet is not None and row.owner_wallet == identity.wallet


__all__ = ["AuthGate", "Identity", "OPERATOR_OWNER", "normalize_wallet", "sign_in_message"]

"""
Token-holder oracle backed by the Helius Solana RPC.

Answers "does this wallet hold at least the threshold of UNREPO tokens" via
getTokenAccountsByOwner filtered by mint. The result is cached onto the wallet
row by the wallet service; this module never touches storage.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from unrepo.core.config import settings
from unrepo.core.errors import CollaboratorError
from unrepo.core.logging import mask_wallet


logger = logging.getLogger(__name__)

RPC_TIMEOUT_SECONDS = 10.0
TOKEN_SYMBOL = "UNREPO"
TOKEN_BENEFITS = [
    "Unlimited AI Chat",
    "Unlimited Research Analysis",
    "Priority Support",
    "Early Access to New Features",
]


@dataclass(frozen=True)
class TokenVerification:
    is_token_holder: bool
    token_balance: float
    threshold: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isTokenHolder": self.is_token_holder,
            "tokenBalance": self.token_balance,
            "threshold": self.threshold,
        }


class HeliusTokenOracle:
    """Synchronous JSON-RPC client; pass `client` to substitute a transport in tests."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        rpc_url: Optional[str] = None,
        mint: Optional[str] = None,
        threshold: Optional[int] = None,
        decimals: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.HELIUS_API_KEY
        self.rpc_url = rpc_url or settings.HELIUS_RPC_URL
        self.mint = mint or settings.UNREPO_TOKEN_MINT
        self.threshold = threshold if threshold is not None else settings.UNREPO_TOKEN_THRESHOLD
        self.decimals = decimals if decimals is not None else settings.UNREPO_TOKEN_DECIMALS
        self._client = client

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        params = {"api-key": self.api_key}
        if self._client is not None:
            response = self._client.post(self.rpc_url, params=params, json=payload)
        else:
            with httpx.Client(timeout=RPC_TIMEOUT_SECONDS) as client:
                response = client.post(self.rpc_url, params=params, json=payload)
        response.raise_for_status()
        return response.json()

    def get_token_balance(self, wallet_address: str) -> float:
        """Sum of uiAmount over every token account of the mint owned by the wallet."""
        if not self.api_key:
            raise CollaboratorError("HELIUS_API_KEY not configured")

        payload = {
            "jsonrpc": "2.0",
            "id": "token-check",
            "method": "getTokenAccountsByOwner",
            "params": [
                wallet_address,
                {"mint": self.mint},
                {"encoding": "jsonParsed"},
            ],
        }
        try:
            data = self._post(payload)
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorError(f"Token balance lookup failed: {e}") from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise CollaboratorError(f"Token balance lookup failed: {message}")

        accounts = ((data.get("result") or {}).get("value")) or []
        total = 0.0
        for entry in accounts:
            try:
                amount = entry["account"]["data"]["parsed"]["info"]["tokenAmount"]
            except (KeyError, TypeError):
                continue
            total += float(amount.get("uiAmount") or 0)
        return total

    def verify_token_holder(self, wallet_address: str) -> TokenVerification:
        balance = self.get_token_balance(wallet_address)
        verification = TokenVerification(
            is_token_holder=balance >= self.threshold,
            token_balance=balance,
            threshold=self.threshold,
        )
        logger.info(
            "[tokens] verified %s balance=%s holder=%s",
            mask_wallet(wallet_address),
            balance,
            verification.is_token_holder,
            extra={"event_type": "token.verified"},
        )
        return verification

    def token_info(self) -> Dict[str, Any]:
        return {
            "tokenMint": self.mint,
            "threshold": self.threshold,
            "decimals": self.decimals,
            "symbol": TOKEN_SYMBOL,
            "benefits": list(TOKEN_BENEFITS),
        }

"""
Chain gateway client — thin JSON-RPC wrapper around the prediction-market program.

The gateway owns the Solana/Anchor/MPC plumbing (PDA derivation, account decoding,
computation account addresses). This module only speaks JSON-RPC 2.0 to it over
HTTP, signing every request with the payer wallet so the gateway can attribute
reveal submissions and fees.

All calls are blocking (requests). Async callers wrap them in asyncio.to_thread().
"""

import base64
import itertools
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from market_indexer.core.config import (
    CHAIN_RPC_TIMEOUT,
    CHAIN_RPC_URL,
    CLUSTER_OFFSET,
    WALLET_PRIVATE_KEY,
)
from market_indexer.models.market import MarketSnapshot

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

# JSON-RPC error code the gateway uses when the payer cannot cover fees
INSUFFICIENT_BALANCE_CODE = -32010

FINALIZATION_POLL_SECONDS = 2.0


class ChainRpcError(Exception):
    """The gateway returned an error or could not be reached."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class InsufficientBalanceError(ChainRpcError):
    """The payer wallet cannot cover the transaction or computation fee."""


class FinalizationTimeoutError(ChainRpcError):
    """A submitted computation did not finalize within the allotted time."""


@dataclass(frozen=True)
class RevealSubmission:
    market_id: int
    computation_offset: int
    queue_signature: str


def new_computation_offset() -> int:
    """Fresh random 64-bit handle identifying one MPC computation."""
    return int.from_bytes(secrets.token_bytes(8), "little")


def load_wallet(secret_b64: str) -> Ed25519PrivateKey:
    """
    Load the payer wallet from a base64 secret.
    Accepts a 64-byte keypair (seed || pubkey, the Solana CLI layout) or a bare 32-byte seed.
    """
    if not secret_b64:
        raise ValueError("WALLET_PRIVATE_KEY is not set.")
    raw = base64.b64decode(secret_b64)
    if len(raw) not in (32, 64):
        raise ValueError(f"Wallet secret must be 32 or 64 bytes, got {len(raw)}")
    return Ed25519PrivateKey.from_private_bytes(raw[:32])


class ChainGateway:
    """
    Blocking JSON-RPC client. Callers run it through asyncio.to_thread, so each
    worker thread gets its own requests.Session from session_factory.
    """

    def __init__(
        self,
        rpc_url: str = CHAIN_RPC_URL,
        wallet: Ed25519PrivateKey | None = None,
        timeout: float = CHAIN_RPC_TIMEOUT,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._wallet = wallet
        self._session_factory = session_factory
        self._local = threading.local()
        self._ids = itertools.count(1)

    @property
    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    @classmethod
    def from_env(cls) -> "ChainGateway":
        wallet = load_wallet(WALLET_PRIVATE_KEY) if WALLET_PRIVATE_KEY else None
        return cls(wallet=wallet)

    @property
    def wallet_pubkey(self) -> str | None:
        if self._wallet is None:
            return None
        raw = self._wallet.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return base64.b64encode(raw).decode()

    def _auth_headers(self, method: str) -> dict[str, str]:
        """Ed25519 signature over timestamp + method, mirroring the gateway's verifier."""
        if self._wallet is None:
            return {}
        timestamp_ms = str(int(time.time() * 1000))
        signature = self._wallet.sign((timestamp_ms + method).encode())
        return {
            "X-WALLET-PUBKEY": self.wallet_pubkey,
            "X-WALLET-TIMESTAMP": timestamp_ms,
            "X-WALLET-SIGNATURE": base64.b64encode(signature).decode(),
        }

    def _call(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self._session.post(
                self.rpc_url,
                json=body,
                headers=self._auth_headers(method),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise ChainRpcError(f"{method} failed: {exc}") from exc

        error = data.get("error")
        if error:
            code = error.get("code")
            message = f"{method} failed: {error.get('message', 'unknown error')}"
            if code == INSUFFICIENT_BALANCE_CODE:
                raise InsufficientBalanceError(message, code)
            raise ChainRpcError(message, code)
        return data.get("result")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def fetch_market(self, market_id: int) -> MarketSnapshot:
        """Fetch and decode the market account for market_id."""
        result = self._call("getMarketAccount", [market_id])
        if result is None:
            raise ChainRpcError(f"Market account {market_id} not found")
        return MarketSnapshot.model_validate({**result, "marketId": market_id})

    def get_balance(self) -> int:
        """Payer wallet balance in lamports."""
        return int(self._call("getBalance", [self.wallet_pubkey]))

    # -----------------------------------------------------------------------
    # Reveal computation
    # -----------------------------------------------------------------------

    def submit_reveal(self, market_id: int, computation_offset: int | None = None) -> RevealSubmission:
        """
        Queue a reveal_probs computation for market_id.
        Returns as soon as the queueing transaction is confirmed.
        """
        offset = computation_offset if computation_offset is not None else new_computation_offset()
        signature = self._call(
            "revealProbs",
            [{
                "marketId": market_id,
                "computationOffset": str(offset),
                "clusterOffset": CLUSTER_OFFSET,
                "commitment": "confirmed",
            }],
        )
        return RevealSubmission(market_id=market_id, computation_offset=offset, queue_signature=signature)

    def await_finalization(self, computation_offset: int, timeout: float) -> str:
        """
        Poll until the computation is finalized and return the finalize signature.
        Raises FinalizationTimeoutError once timeout seconds have elapsed.
        """
        deadline = time.monotonic() + timeout
        while True:
            result = self._call("getComputationStatus", [str(computation_offset)]) or {}
            if result.get("status") == "finalized":
                return result["finalizeSignature"]
            if result.get("status") == "failed":
                raise ChainRpcError(f"Computation {computation_offset} failed: {result.get('error')}")
            if time.monotonic() >= deadline:
                raise FinalizationTimeoutError(
                    f"Computation {computation_offset} not finalized after {timeout:.0f}s"
                )
            time.sleep(FINALIZATION_POLL_SECONDS)

    def request_airdrop(self, lamports: int = LAMPORTS_PER_SOL) -> str | None:
        """Devnet only. Returns the airdrop signature, or None if the faucet refused."""
        try:
            signature = self._call("requestAirdrop", [self.wallet_pubkey, lamports])
            logger.info("[chain] Airdropped %.2f SOL to %s", lamports / LAMPORTS_PER_SOL, self.wallet_pubkey)
            return signature
        except ChainRpcError as exc:
            logger.error("[chain] Airdrop failed: %s", exc)
            return None

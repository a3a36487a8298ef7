"""
Chain verifier abstraction.

A ChainVerifier reads a single network: it never decides whether a payment is
settled, it only reports what the chain says (transfers, depth, memo, balance).
Providers combine these facts with the payment's expectations.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class ChainTransfer:
    tx_hash: str
    sender: Optional[str]
    recipient: str
    # token base units
    amount: int
    confirmations: int
    block_time: Optional[datetime] = None
    event_index: Optional[int] = None
    memo: Optional[str] = None

    @property
    def reference(self) -> str:
        """Unique per transfer: a tx can carry several transfers to the same address."""
        if self.event_index is None:
            return self.tx_hash
        return f"{self.tx_hash}:{self.event_index}"


@dataclass(frozen=True)
class ChainTransaction:
    tx_hash: str
    succeeded: bool
    confirmations: int
    block_time: Optional[datetime] = None
    memo: Optional[str] = None
    transfers: tuple[ChainTransfer, ...] = field(default_factory=tuple)

    def transfers_to(self, address: str) -> list[ChainTransfer]:
        return [t for t in self.transfers if same_address(t.recipient, address)]


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    if a.startswith("0x") and b.startswith("0x"):
        return a.lower() == b.lower()
    return a == b


@runtime_checkable
class ChainVerifier(Protocol):
    chain: str
    decimals: int
    # token contract, mint or asset identifier
    token: str
    supports_memo: bool

    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        """None when the network has not seen the transaction (yet)."""
        ...

    async def find_transfers_to(self, address: str) -> list[ChainTransfer]:
        ...

    async def get_token_balance(self, address: str) -> int:
        ...

    async def submit_token_transfer(self, signer, destination: str, amount: int) -> str:
        """Broadcast a token transfer and return its hash."""
        ...

"""
StellarVerifier - credit-asset payments on the Stellar ledger via Horizon.

Ledger-model chain: a transaction included in a closed ledger is final, so the
depth of any transaction Horizon returns is 1. Amounts are decimal strings with
7 fractional digits.
"""
import logging
from datetime import datetime
from typing import Optional

from app.chains.amounts import decimal_to_base_units
from app.chains.base import ChainTransaction, ChainTransfer
from app.chains.rpc import RestClient
from app.core.config import StellarSettings
from app.core.errors import NotConfigured

logger = logging.getLogger("settlement.chains.stellar")

STELLAR_DECIMALS = 7
LEDGER_FINAL_DEPTH = 1


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class StellarVerifier:
    chain = "stellar"
    supports_memo = True
    decimals = STELLAR_DECIMALS

    def __init__(self, config: StellarSettings, client: RestClient | None = None):
        self.config = config
        self.client = client or RestClient(config.horizon_url)
        self.token = f"{config.asset_code}:{config.asset_issuer}"

    def _matches_asset(self, record: dict) -> bool:
        return (
            record.get("asset_code") == self.config.asset_code
            and record.get("asset_issuer") == self.config.asset_issuer
        )

    def _transfer(self, record: dict, tx_hash: str, event_index: int,
                  memo: Optional[str] = None) -> Optional[ChainTransfer]:
        if record.get("type") != "payment" or not self._matches_asset(record):
            return None
        return ChainTransfer(
            tx_hash=tx_hash,
            sender=record.get("from"),
            recipient=record["to"],
            amount=decimal_to_base_units(record["amount"], STELLAR_DECIMALS),
            confirmations=LEDGER_FINAL_DEPTH,
            block_time=_parse_time(record.get("created_at")),
            event_index=event_index,
            memo=memo,
        )

    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        tx = await self.client.get(f"/transactions/{tx_hash}")
        if tx is None:
            return None
        memo = tx.get("memo") if tx.get("memo_type") == "text" else None
        ops = await self.client.get(f"/transactions/{tx_hash}/operations", params={"limit": 200}) or {}
        transfers = []
        for idx, record in enumerate((ops.get("_embedded") or {}).get("records") or []):
            transfer = self._transfer(record, tx_hash, idx, memo)
            if transfer is not None:
                transfers.append(transfer)
        return ChainTransaction(
            tx_hash=tx_hash,
            succeeded=bool(tx.get("successful")),
            confirmations=LEDGER_FINAL_DEPTH,
            block_time=_parse_time(tx.get("created_at")),
            memo=memo,
            transfers=tuple(transfers),
        )

    async def find_transfers_to(self, address: str) -> list[ChainTransfer]:
        page = await self.client.get(f"/accounts/{address}/payments", params={"order": "desc", "limit": 50}) or {}
        transfers = []
        for record in (page.get("_embedded") or {}).get("records") or []:
            if not record.get("transaction_successful", True) or record.get("to") != address:
                continue
            # operation ids are unique per ledger; use them as the event index
            transfer = self._transfer(record, record["transaction_hash"], int(record.get("id", 0)))
            if transfer is not None:
                transfers.append(transfer)
        return transfers

    async def get_token_balance(self, address: str) -> int:
        account = await self.client.get(f"/accounts/{address}")
        if account is None:
            return 0
        for balance in account.get("balances") or []:
            if self._matches_asset(balance):
                return decimal_to_base_units(balance["balance"], STELLAR_DECIMALS)
        return 0

    async def submit_token_transfer(self, signer, destination: str, amount: int) -> str:
        raise NotConfigured("stellar deposit addresses are not swept")

"""
SolanaVerifier - SPL token (USDC) transfers on Solana.

Transactions are read with getTransaction (jsonParsed). A transfer counts only
when its mint is the configured token and the owner of the destination token
account can be resolved from postTokenBalances. Depth comes from
getSignatureStatuses; a finalized signature reports no confirmation count and is
treated as fully deep.

Deposit addresses are wallet (owner) addresses; their token account is the
associated token account derived from (owner, token program, mint).
"""
import base64
import logging
import struct
from datetime import datetime, timezone
from typing import Any, Optional

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from app.chains.base import ChainTransaction, ChainTransfer, same_address
from app.chains.confirmations import required_confirmations_for
from app.chains.rpc import JsonRpcClient, RpcError
from app.core.config import SolanaSettings
from app.core.errors import InvalidArgument, NotConfigured, ProviderUnavailable, SubmissionUncertain

logger = logging.getLogger("settlement.chains.solana")

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
MEMO_PROGRAM_IDS = frozenset({
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
    "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo",
})
TRANSFER_CHECKED_TAG = 12


def associated_token_address(owner: str, mint: str) -> str:
    seeds = [
        bytes(Pubkey.from_string(owner)),
        bytes(Pubkey.from_string(TOKEN_PROGRAM_ID)),
        bytes(Pubkey.from_string(mint)),
    ]
    ata, _ = Pubkey.find_program_address(seeds, Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID))
    return str(ata)


def transfer_checked_instruction(source: str, mint: str, destination: str, owner: Pubkey,
                                 amount: int, decimals: int) -> Instruction:
    data = bytes([TRANSFER_CHECKED_TAG]) + struct.pack("<Q", amount) + bytes([decimals])
    accounts = [
        AccountMeta(Pubkey.from_string(source), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(mint), is_signer=False, is_writable=False),
        AccountMeta(Pubkey.from_string(destination), is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(TOKEN_PROGRAM_ID), data, accounts)


def _account_keys(tx: dict) -> list[str]:
    keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    return [k["pubkey"] if isinstance(k, dict) else k for k in keys]


def _token_account_info(tx: dict, token_account: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """(mint, owner) of ``token_account`` from postTokenBalances."""
    if not token_account:
        return None, None
    keys = _account_keys(tx)
    for balance in (tx.get("meta") or {}).get("postTokenBalances") or []:
        idx = balance.get("accountIndex")
        if idx is not None and idx < len(keys) and keys[idx] == token_account:
            return balance.get("mint"), balance.get("owner")
    return None, None


def _iter_instructions(tx: dict):
    message = (tx.get("transaction") or {}).get("message") or {}
    for ix in message.get("instructions") or []:
        yield ix
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        for ix in inner.get("instructions") or []:
            yield ix


def parse_memo(tx: dict) -> Optional[str]:
    for ix in _iter_instructions(tx):
        if ix.get("program") == "spl-memo" or ix.get("programId") in MEMO_PROGRAM_IDS:
            parsed = ix.get("parsed")
            if isinstance(parsed, str):
                return parsed
    return None


def _block_time(tx: dict) -> Optional[datetime]:
    if tx.get("blockTime") is None:
        return None
    return datetime.fromtimestamp(int(tx["blockTime"]), tz=timezone.utc)


class SolanaVerifier:
    chain = "solana"
    supports_memo = True

    def __init__(self, config: SolanaSettings, rpc: JsonRpcClient | None = None):
        self.config = config
        self.mint = config.usdc_mint
        self.token = config.usdc_mint
        self.decimals = config.token_decimals
        self.rpc = rpc or JsonRpcClient(config.rpc_url)
        self.finalized_depth = required_confirmations_for(self.chain)

    def _fee_payer(self) -> Keypair:
        key = self.config.fee_payer_key.get_secret_value()
        if not key:
            raise NotConfigured("SOLANA__FEE_PAYER_KEY is not configured")
        return Keypair.from_base58_string(key)

    def parse_transfers(self, tx: dict, tx_hash: str, confirmations: int) -> list[ChainTransfer]:
        block_time = _block_time(tx)
        memo = parse_memo(tx)
        transfers = []
        for event_index, ix in enumerate(_iter_instructions(tx)):
            if ix.get("program") != "spl-token":
                continue
            parsed = ix.get("parsed")
            if not isinstance(parsed, dict) or parsed.get("type") not in ("transfer", "transferChecked"):
                continue
            info = parsed.get("info") or {}
            destination = info.get("destination")
            mint, owner = _token_account_info(tx, destination)
            mint = info.get("mint") or mint
            if mint != self.mint or not owner:
                continue
            amount = (info.get("tokenAmount") or {}).get("amount") or info.get("amount") or "0"
            sender_account = info.get("source")
            _, sender_owner = _token_account_info(tx, sender_account)
            transfers.append(ChainTransfer(
                tx_hash=tx_hash,
                sender=info.get("authority") or sender_owner or sender_account,
                recipient=owner,
                amount=int(amount),
                confirmations=confirmations,
                block_time=block_time,
                event_index=event_index,
                memo=memo,
            ))
        return transfers

    async def _confirmations(self, signature: str) -> int:
        result = await self.rpc.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if status is None:
            return 0
        if status.get("confirmationStatus") == "finalized" or status.get("confirmations") is None:
            return self.finalized_depth
        return int(status["confirmations"])

    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        tx = await self.rpc.call("getTransaction", [
            tx_hash,
            {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
        ])
        if not tx:
            return None
        confirmations = await self._confirmations(tx_hash)
        return ChainTransaction(
            tx_hash=tx_hash,
            succeeded=(tx.get("meta") or {}).get("err") is None,
            confirmations=confirmations,
            block_time=_block_time(tx),
            memo=parse_memo(tx),
            transfers=tuple(self.parse_transfers(tx, tx_hash, confirmations)),
        )

    async def find_transfers_to(self, address: str) -> list[ChainTransfer]:
        token_account = associated_token_address(address, self.mint)
        signatures = await self.rpc.call("getSignaturesForAddress", [
            token_account,
            {"limit": self.config.signature_scan_limit, "commitment": "confirmed"},
        ])
        transfers: list[ChainTransfer] = []
        for entry in signatures or []:
            if entry.get("err") is not None:
                continue
            tx = await self.get_transaction(entry["signature"])
            if tx is None or not tx.succeeded:
                continue
            transfers.extend(tx.transfers_to(address))
        return transfers

    async def get_token_balance(self, address: str) -> int:
        token_account = associated_token_address(address, self.mint)
        try:
            result: Any = await self.rpc.call("getTokenAccountBalance", [token_account, {"commitment": "confirmed"}])
        except RpcError as exc:
            # an address that never received the token has no token account
            logger.debug("No token account for %s: %s", address, exc)
            return 0
        return int(((result or {}).get("value") or {}).get("amount") or 0)

    async def submit_token_transfer(self, signer: Keypair, destination: str, amount: int) -> str:
        if amount <= 0:
            raise InvalidArgument("transfer amount must be positive")
        if not destination:
            raise InvalidArgument("solana treasury wallet is not set")
        fee_payer = self._fee_payer()
        owner = signer.pubkey()
        source_ata = associated_token_address(str(owner), self.mint)
        destination_ata = associated_token_address(destination, self.mint)
        ix = transfer_checked_instruction(source_ata, self.mint, destination_ata, owner, amount, self.decimals)

        latest = await self.rpc.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        blockhash = Hash.from_string(latest["value"]["blockhash"])
        message = Message.new_with_blockhash([ix], fee_payer.pubkey(), blockhash)
        signers = [fee_payer] if same_address(str(fee_payer.pubkey()), str(owner)) else [fee_payer, signer]
        tx = Transaction(signers, message, blockhash)
        signature = str(tx.signatures[0])
        raw = base64.b64encode(bytes(tx)).decode("ascii")
        try:
            sent = await self.rpc.call("sendTransaction", [raw, {"encoding": "base64", "preflightCommitment": "confirmed"}])
        except RpcError:
            # preflight rejection: nothing was broadcast
            raise
        except ProviderUnavailable as exc:
            logger.error("Broadcast outcome unknown chain=solana signature=%s", signature)
            raise SubmissionUncertain("token transfer broadcast did not complete", tx_hash=signature) from exc
        logger.info("Submitted token transfer chain=solana signature=%s", sent or signature)
        return sent or signature

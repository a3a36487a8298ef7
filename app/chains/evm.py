"""
EvmVerifier - ERC-20 token transfers on account-model chains (Ethereum, Base, ...).

Reads:
- eth_getTransactionReceipt + eth_blockNumber for depth
- Transfer(address,address,uint256) logs of the configured token contract
- balanceOf via eth_call

Writes (sweep only): a signed ERC-20 transfer() from a derived deposit key. The
deposit address pays its own gas.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from eth_utils import is_address, to_checksum_address

from app.chains.base import ChainTransaction, ChainTransfer, same_address
from app.chains.rpc import JsonRpcClient, RpcError
from app.core.config import EvmChainSettings
from app.core.errors import InvalidArgument, ProviderUnavailable, SubmissionUncertain

logger = logging.getLogger("settlement.chains.evm")

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
TRANSFER_SELECTOR = "a9059cbb"
BALANCE_OF_SELECTOR = "70a08231"


def _hex_to_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if value not in ("0x", "") else 0


def topic_for_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def address_from_topic(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def encode_transfer_call(destination: str, amount: int) -> str:
    return (
        "0x"
        + TRANSFER_SELECTOR
        + destination.lower().replace("0x", "").rjust(64, "0")
        + format(int(amount), "x").rjust(64, "0")
    )


class EvmVerifier:
    supports_memo = False

    def __init__(self, chain: str, config: EvmChainSettings, rpc: JsonRpcClient | None = None):
        self.chain = chain
        self.config = config
        self.decimals = config.token_decimals
        self.token_contract = config.token_contract
        self.token = config.token_contract
        self.rpc = rpc or JsonRpcClient(config.rpc_url)

    async def _block_number(self) -> int:
        return _hex_to_int(await self.rpc.call("eth_blockNumber", []))

    async def _block_time(self, block_number_hex: str) -> Optional[datetime]:
        block = await self.rpc.call("eth_getBlockByNumber", [block_number_hex, False])
        if not block or block.get("timestamp") is None:
            return None
        return datetime.fromtimestamp(_hex_to_int(block["timestamp"]), tz=timezone.utc)

    def _transfer_from_log(self, log: dict, confirmations: int,
                           block_time: Optional[datetime] = None) -> Optional[ChainTransfer]:
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
            return None
        if not same_address(log.get("address"), self.token_contract):
            return None
        return ChainTransfer(
            tx_hash=log["transactionHash"],
            sender=address_from_topic(topics[1]),
            recipient=address_from_topic(topics[2]),
            amount=_hex_to_int(log.get("data")),
            confirmations=confirmations,
            block_time=block_time,
            event_index=_hex_to_int(log.get("logIndex")),
        )

    async def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash])
        if not receipt or receipt.get("blockNumber") is None:
            return None
        block_number = _hex_to_int(receipt["blockNumber"])
        current = await self._block_number()
        confirmations = max(0, current - block_number + 1)
        block_time = await self._block_time(receipt["blockNumber"])
        transfers = []
        for log in receipt.get("logs") or []:
            transfer = self._transfer_from_log(log, confirmations, block_time)
            if transfer is not None:
                transfers.append(transfer)
        return ChainTransaction(
            tx_hash=receipt.get("transactionHash", tx_hash),
            succeeded=_hex_to_int(receipt.get("status")) == 1,
            confirmations=confirmations,
            block_time=block_time,
            transfers=tuple(transfers),
        )

    async def find_transfers_to(self, address: str) -> list[ChainTransfer]:
        current = await self._block_number()
        from_block = max(0, current - self.config.log_lookback_blocks)
        logs = await self.rpc.call("eth_getLogs", [{
            "fromBlock": hex(from_block),
            "toBlock": "latest",
            "address": self.token_contract,
            "topics": [TRANSFER_TOPIC, None, topic_for_address(address)],
        }])
        transfers = []
        for log in logs or []:
            if log.get("removed"):
                continue
            block_number = _hex_to_int(log.get("blockNumber"))
            transfer = self._transfer_from_log(log, max(0, current - block_number + 1))
            if transfer is not None:
                transfers.append(transfer)
        return transfers

    async def get_token_balance(self, address: str) -> int:
        data = "0x" + BALANCE_OF_SELECTOR + address.lower().replace("0x", "").rjust(64, "0")
        result = await self.rpc.call("eth_call", [{"to": self.token_contract, "data": data}, "latest"])
        return _hex_to_int(result)

    async def submit_token_transfer(self, signer, destination: str, amount: int) -> str:
        if not is_address(destination):
            raise InvalidArgument(f"invalid {self.chain} destination address")
        if amount <= 0:
            raise InvalidArgument("transfer amount must be positive")
        nonce = _hex_to_int(await self.rpc.call("eth_getTransactionCount", [signer.address, "pending"]))
        gas_price = _hex_to_int(await self.rpc.call("eth_gasPrice", []))
        tx = {
            "to": to_checksum_address(self.token_contract),
            "value": 0,
            "data": encode_transfer_call(destination, amount),
            "gas": self.config.sweep_gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }
        signed = signer.sign_transaction(tx)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        expected_hash = "0x" + bytes(signed.hash).hex()
        try:
            tx_hash = await self.rpc.call("eth_sendRawTransaction", [raw])
        except RpcError:
            # node rejected the transaction: nothing was broadcast
            raise
        except ProviderUnavailable as exc:
            logger.error("Broadcast outcome unknown chain=%s tx=%s", self.chain, expected_hash)
            raise SubmissionUncertain("token transfer broadcast did not complete", tx_hash=expected_hash) from exc
        logger.info("Submitted token transfer chain=%s tx=%s", self.chain, tx_hash)
        return tx_hash or expected_hash

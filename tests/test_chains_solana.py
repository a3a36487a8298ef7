import json
import uuid

import httpx
import pytest
import respx
from pydantic import SecretStr
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from app.allocator import hd
from app.chains.solana import TOKEN_PROGRAM_ID, SolanaVerifier, associated_token_address, parse_memo
from app.core.config import SolanaSettings
from app.core.errors import NotConfigured
from app.providers.base import VerificationStatus, VerifyRequest
from app.providers.wallet import WalletProvider, memo_for
from tests.conftest import MNEMONIC

RPC_URL = "https://solana.rpc.test"
MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
PLATFORM = hd.derive_address(MNEMONIC, "solana", 0)
PAYER = str(Pubkey.new_unique())


def _config(**overrides):
    return SolanaSettings(**{"rpc_url": RPC_URL, "usdc_mint": MINT, "platform_wallet": PLATFORM, **overrides})


def _parsed_tx(memo, amount="5000000", recipient=PLATFORM, err=None):
    payer_ata = associated_token_address(PAYER, MINT)
    recipient_ata = associated_token_address(recipient, MINT)
    instructions = [{
        "program": "spl-token",
        "programId": TOKEN_PROGRAM_ID,
        "parsed": {"type": "transferChecked", "info": {
            "source": payer_ata, "destination": recipient_ata, "mint": MINT, "authority": PAYER,
            "tokenAmount": {"amount": amount, "decimals": 6},
        }},
    }]
    if memo is not None:
        instructions.insert(0, {"program": "spl-memo", "programId": "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
                                "parsed": memo})
    return {
        "blockTime": 1_700_000_000,
        "meta": {
            "err": err,
            "innerInstructions": [],
            "postTokenBalances": [
                {"accountIndex": 1, "mint": MINT, "owner": PAYER},
                {"accountIndex": 2, "mint": MINT, "owner": recipient},
            ],
        },
        "transaction": {"message": {
            "accountKeys": [{"pubkey": PAYER}, {"pubkey": payer_ata}, {"pubkey": recipient_ata},
                            {"pubkey": MINT}, {"pubkey": TOKEN_PROGRAM_ID}],
            "instructions": instructions,
        }},
    }


def rpc_handler(results: dict, calls: list | None = None):
    def handler(request: httpx.Request):
        body = json.loads(request.content)
        if calls is not None:
            calls.append((body["method"], body["params"]))
        result = results[body["method"]]
        if callable(result):
            result = result(body["params"])
        if isinstance(result, dict) and "__error__" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["__error__"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


FINALIZED = {"value": [{"confirmationStatus": "finalized", "confirmations": None}]}


def test_memo_and_transfer_parsing():
    payment_id = uuid.uuid4()
    tx = _parsed_tx(memo_for(payment_id))
    assert parse_memo(tx) == f"settle:{payment_id}"

    [transfer] = SolanaVerifier(_config()).parse_transfers(tx, "sig", confirmations=3)
    assert transfer.recipient == PLATFORM
    assert transfer.sender == PAYER
    assert transfer.amount == 5_000_000
    assert transfer.memo == f"settle:{payment_id}"


def test_transfers_of_other_mints_are_ignored():
    config = _config(usdc_mint=str(Pubkey.new_unique()))
    assert SolanaVerifier(config).parse_transfers(_parsed_tx(None), "sig", confirmations=3) == []


@respx.mock
async def test_finalized_transfer_with_memo_is_verified():
    payment_id = uuid.uuid4()
    respx.post(RPC_URL).mock(side_effect=rpc_handler({
        "getTransaction": _parsed_tx(memo_for(payment_id)),
        "getSignatureStatuses": FINALIZED,
    }))
    provider = WalletProvider(SolanaVerifier(_config()), PLATFORM)
    result = await provider.verify(VerifyRequest(payment_id=payment_id, expected_amount_minor=500,
                                                 provider_ref="sig1", chain="solana"))
    assert result.status == VerificationStatus.VERIFIED
    assert result.confirmations == 31
    assert result.sender == PAYER


@respx.mock
async def test_memo_for_another_payment_is_rejected():
    respx.post(RPC_URL).mock(side_effect=rpc_handler({
        "getTransaction": _parsed_tx(memo_for(uuid.uuid4())),
        "getSignatureStatuses": FINALIZED,
    }))
    provider = WalletProvider(SolanaVerifier(_config()), PLATFORM)
    result = await provider.verify(VerifyRequest(payment_id=uuid.uuid4(), expected_amount_minor=500,
                                                 provider_ref="sig1", chain="solana"))
    assert result.status == VerificationStatus.REJECTED
    assert "memo" in result.reason


@respx.mock
async def test_confirmed_but_not_finalized_is_pending():
    payment_id = uuid.uuid4()
    respx.post(RPC_URL).mock(side_effect=rpc_handler({
        "getTransaction": _parsed_tx(memo_for(payment_id)),
        "getSignatureStatuses": {"value": [{"confirmationStatus": "confirmed", "confirmations": 4}]},
    }))
    provider = WalletProvider(SolanaVerifier(_config()), PLATFORM)
    result = await provider.verify(VerifyRequest(payment_id=payment_id, expected_amount_minor=500,
                                                 provider_ref="sig1", chain="solana"))
    assert result.status == VerificationStatus.PENDING
    assert result.confirmations == 4


@respx.mock
async def test_find_transfers_scans_the_associated_token_account():
    calls = []
    respx.post(RPC_URL).mock(side_effect=rpc_handler({
        "getSignaturesForAddress": [{"signature": "good", "err": None}, {"signature": "bad", "err": {"x": 1}}],
        "getTransaction": _parsed_tx(None),
        "getSignatureStatuses": FINALIZED,
    }, calls))
    transfers = await SolanaVerifier(_config()).find_transfers_to(PLATFORM)

    assert [t.tx_hash for t in transfers] == ["good"]
    assert calls[0][1][0] == associated_token_address(PLATFORM, MINT)
    fetched = [params[0] for method, params in calls if method == "getTransaction"]
    assert fetched == ["good"]


@respx.mock
async def test_balance_of_missing_token_account_is_zero():
    route = respx.post(RPC_URL)
    route.mock(side_effect=rpc_handler({
        "getTokenAccountBalance": {"__error__": {"code": -32602, "message": "could not find account"}},
    }))
    assert await SolanaVerifier(_config()).get_token_balance(PLATFORM) == 0

    route.mock(side_effect=rpc_handler({"getTokenAccountBalance": {"value": {"amount": "1250000"}}}))
    assert await SolanaVerifier(_config()).get_token_balance(PLATFORM) == 1_250_000


async def test_sweep_requires_fee_payer():
    signer = hd.derive_signer(MNEMONIC, "solana", 1)
    with pytest.raises(NotConfigured):
        await SolanaVerifier(_config()).submit_token_transfer(signer, PLATFORM, 100)


@respx.mock
async def test_sweep_is_signed_by_fee_payer_and_owner():
    fee_payer = Keypair()
    calls = []
    respx.post(RPC_URL).mock(side_effect=rpc_handler({
        "getLatestBlockhash": {"value": {"blockhash": "11111111111111111111111111111111"}},
        "sendTransaction": lambda params: "broadcast-sig",
    }, calls))
    verifier = SolanaVerifier(_config(fee_payer_key=SecretStr(str(fee_payer))))
    signer = hd.derive_signer(MNEMONIC, "solana", 1)

    assert await verifier.submit_token_transfer(signer, PLATFORM, 100) == "broadcast-sig"
    method, params = calls[-1]
    assert method == "sendTransaction"
    assert params[1]["encoding"] == "base64"

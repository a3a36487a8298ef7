import os

# must be set before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import timedelta
from typing import Optional

import pytest

from app.bootstrap import build_services
from app.chains.base import ChainTransaction, ChainTransfer
from app.core.config import Settings
from app.core.errors import ProviderUnavailable
from app.db.models import Base, utcnow
from app.db.session import make_engine, make_session_factory
from app.notifications.notifier import NullNotifier
from app.payments import state_machine as sm
from app.payments.enums import PaymentPurpose, ProviderKind
from app.providers.wallet import WalletProvider

# Hardhat / Foundry development mnemonic
MNEMONIC = "test test test test test test test test test test test junk"
PLATFORM_WALLET = "PLATFORM"
TEST_CHAIN = "testchain"
# first two accounts of MNEMONIC on m/44'/60'/0'/0/i
HARDHAT_ADDRESSES = (
    "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
)


class FakeVerifier:
    """In-memory chain: amounts are in minor units (2 decimals)."""

    supports_memo = False

    def __init__(self, chain: str = TEST_CHAIN, decimals: int = 2, token: str = "TUSD"):
        self.chain = chain
        self.decimals = decimals
        self.token = token
        self.transactions: dict[str, ChainTransaction] = {}
        self.transfers: dict[str, list[ChainTransfer]] = {}
        self.balances: dict[str, int] = {}
        self.submitted: list[tuple] = []
        self.submit_error: Optional[Exception] = None
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise ProviderUnavailable("fake chain is down")

    def pay(self, tx_hash: str, recipient: str, amount: int, confirmations: int = 5, succeeded: bool = True):
        transfer = ChainTransfer(tx_hash=tx_hash, sender="payer", recipient=recipient, amount=amount,
                                 confirmations=confirmations, block_time=utcnow(), event_index=0)
        self.transactions[tx_hash] = ChainTransaction(
            tx_hash=tx_hash, succeeded=succeeded, confirmations=confirmations,
            block_time=transfer.block_time, transfers=(transfer,),
        )
        self.transfers.setdefault(recipient, []).append(transfer)
        return transfer

    async def get_transaction(self, tx_hash):
        self._check()
        return self.transactions.get(tx_hash)

    async def find_transfers_to(self, address):
        self._check()
        return list(self.transfers.get(address, []))

    async def get_token_balance(self, address):
        self._check()
        return self.balances.get(address, 0)

    async def submit_token_transfer(self, signer, destination, amount):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((signer.address, destination, amount))
        return f"0xsweep{len(self.submitted)}"


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def test_settings():
    return Settings(HD_MNEMONIC=MNEMONIC, HD_CHAINS=["solana", "ethereum", "base"], WEBHOOK_URL=None)


@pytest.fixture
def fake_chain():
    return FakeVerifier()


@pytest.fixture
def fake_eth():
    return FakeVerifier(chain="ethereum")


@pytest.fixture
async def services(session_factory, test_settings, fake_chain, fake_eth):
    services = build_services(
        session_factory, test_settings,
        verifiers={TEST_CHAIN: fake_chain, "ethereum": fake_eth},
        notifier=NullNotifier(),
    )
    services.registry.register(WalletProvider(fake_chain, PLATFORM_WALLET), chain=TEST_CHAIN)
    services.registry.treasury_wallets["ethereum"] = "0x000000000000000000000000000000000000dEaD"
    await services.allocator.ensure_counters()
    return services


@pytest.fixture
def make_manual(services):
    """Insert a pending manual payment directly (no allocator involved)."""

    async def _make(address: str = "addr#7", index: int = 7, amount_minor: int = 500,
                    chain: str = TEST_CHAIN, expires_in: timedelta = timedelta(minutes=15), now=None):
        now = now or utcnow()
        payment = sm.new_pending_manual(
            purpose=PaymentPurpose.PLATFORM_SUPPORT,
            amount_minor=amount_minor,
            chain=chain,
            destination_address=address,
            derivation_index=index,
            expires_at=now + expires_in,
            buyer_contact="buyer@example.com",
            now=now,
        )
        return await services.repository.insert(payment)

    return _make


@pytest.fixture
def make_wallet(services):
    async def _make(amount_minor: int = 500, user_id=None):
        return await services.payments.create_pending(
            user_id=user_id or uuid.uuid4(), purpose=PaymentPurpose.PREMIUM, amount_minor=amount_minor,
            provider=ProviderKind.WALLET, chain=TEST_CHAIN,
        )

    return _make

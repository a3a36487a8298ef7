"""
AddressAllocator: unique per-payment deposit addresses for manual payments.

The index counter lives in the database (one derivation_counters row per chain)
and is advanced with a single UPDATE ... RETURNING, so concurrent allocations
across processes are serialised by the store. Only the index is persisted; the
address is re-derived from the mnemonic whenever it is needed.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import sqlalchemy as sa
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.allocator import hd
from app.core.errors import NotConfigured
from app.db.models import DerivationCounter

logger = logging.getLogger("settlement.allocator")


@dataclass(frozen=True)
class AllocatedAddress:
    chain: str
    index: int
    address: str


class AddressAllocator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession],
                 mnemonic: SecretStr | str | None, chains: Iterable[str]):
        self.session_factory = session_factory
        if isinstance(mnemonic, SecretStr):
            mnemonic = mnemonic.get_secret_value()
        self._mnemonic = (mnemonic or "").strip()
        self.chains = frozenset(c for c in chains if hd.is_supported(c))

    @property
    def is_configured(self) -> bool:
        return bool(self._mnemonic)

    def _check_chain(self, chain: str) -> None:
        if not self.is_configured:
            raise NotConfigured("HD mnemonic is not configured")
        if chain not in self.chains:
            raise NotConfigured(f"chain {chain} has no HD derivation configured", chain=chain)

    async def ensure_counters(self) -> None:
        """Create a zeroed counter row for each configured chain that lacks one."""
        async with self.session_factory() as session:
            async with session.begin():
                existing = set((await session.execute(sa.select(DerivationCounter.chain))).scalars().all())
                for chain in sorted(self.chains - existing):
                    session.add(DerivationCounter(chain=chain, next_index=0))
                    logger.info("Seeded derivation counter for chain=%s", chain)

    async def next_index(self, chain: str) -> int:
        self._check_chain(chain)
        stmt = (
            sa.update(DerivationCounter)
            .where(DerivationCounter.chain == chain)
            .values(next_index=DerivationCounter.next_index + 1)
            .returning(DerivationCounter.next_index)
        )
        async with self.session_factory() as session:
            async with session.begin():
                new_value: Optional[int] = (await session.execute(stmt)).scalar_one_or_none()
        if new_value is None:
            raise NotConfigured(f"no derivation counter row for chain {chain}", chain=chain)
        return int(new_value) - 1

    def derive_address(self, chain: str, index: int) -> str:
        self._check_chain(chain)
        return hd.derive_address(self._mnemonic, chain, index)

    def signer_for(self, chain: str, index: int):
        """Re-derive the key for ``index``; used only by the sweep path."""
        self._check_chain(chain)
        return hd.derive_signer(self._mnemonic, chain, index)

    async def allocate(self, chain: str) -> AllocatedAddress:
        index = await self.next_index(chain)
        address = self.derive_address(chain, index)
        logger.info("Allocated deposit address chain=%s index=%s", chain, index)
        return AllocatedAddress(chain=chain, index=index, address=address)

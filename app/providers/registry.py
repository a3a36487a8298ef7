"""
Provider registry and construction from Settings.

Wallet providers are per chain. The manual and off-chain providers are
chain-agnostic (the manual provider dispatches to per-chain verifiers itself).
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from app.allocator.allocator import AddressAllocator
from app.chains.base import ChainVerifier
from app.chains.evm import EvmVerifier
from app.chains.solana import SolanaVerifier
from app.chains.stellar import StellarVerifier
from app.core.config import Settings
from app.core.errors import NotConfigured
from app.payments.enums import ProviderKind
from app.providers.base import PaymentProvider
from app.providers.manual import ManualProvider
from app.providers.offchain import OffChainProvider
from app.providers.wallet import WalletProvider

logger = logging.getLogger("settlement.providers.registry")


@dataclass
class ProviderRegistry:
    providers: dict = field(default_factory=dict)
    verifiers: dict[str, ChainVerifier] = field(default_factory=dict)
    # chain -> treasury wallet for sweeps
    treasury_wallets: dict[str, str] = field(default_factory=dict)

    def register(self, provider: PaymentProvider, chain: Optional[str] = None) -> None:
        self.providers[(provider.kind, chain)] = provider

    def get(self, kind: ProviderKind, chain: Optional[str] = None) -> PaymentProvider:
        provider = self.providers.get((kind, chain)) or self.providers.get((kind, None))
        if provider is None:
            raise NotConfigured(f"no {kind.value} provider configured for chain {chain}", chain=chain)
        return provider

    def verifier(self, chain: str) -> ChainVerifier:
        verifier = self.verifiers.get(chain)
        if verifier is None:
            raise NotConfigured(f"no verifier configured for chain {chain}", chain=chain)
        return verifier


def build_verifiers(cfg: Settings) -> dict[str, ChainVerifier]:
    verifiers: dict[str, ChainVerifier] = {"solana": SolanaVerifier(cfg.SOLANA)}
    for chain, chain_cfg in cfg.EVM_CHAINS.items():
        verifiers[chain] = EvmVerifier(chain, chain_cfg)
    if cfg.STELLAR is not None:
        verifiers["stellar"] = StellarVerifier(cfg.STELLAR)
    return verifiers


def build_registry(cfg: Settings, allocator: AddressAllocator,
                   verifiers: Optional[dict[str, ChainVerifier]] = None) -> ProviderRegistry:
    verifiers = verifiers if verifiers is not None else build_verifiers(cfg)
    registry = ProviderRegistry(verifiers=dict(verifiers))

    platform_wallets = {"solana": cfg.SOLANA.platform_wallet}
    platform_wallets.update({c: ec.platform_wallet for c, ec in cfg.EVM_CHAINS.items()})
    if cfg.STELLAR is not None:
        platform_wallets["stellar"] = cfg.STELLAR.platform_wallet

    for chain, verifier in verifiers.items():
        wallet = platform_wallets.get(chain, "")
        if wallet:
            registry.register(WalletProvider(verifier, wallet), chain=chain)
        else:
            logger.info("Wallet payments disabled for chain=%s (no platform wallet)", chain)

    registry.register(ManualProvider(allocator, verifiers))
    registry.register(OffChainProvider(cfg.PAYPAL))

    registry.treasury_wallets = {"solana": cfg.SOLANA.treasury_wallet}
    registry.treasury_wallets.update({c: ec.treasury_wallet for c, ec in cfg.EVM_CHAINS.items()})
    return registry

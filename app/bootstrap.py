"""
Wires the settlement services together from Settings.

The API and the worker runner both build a Services container; tests build one
against their own session factory and fake verifiers.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.allocator.allocator import AddressAllocator
from app.chains.base import ChainVerifier
from app.core.config import Settings, settings
from app.notifications.notifier import NullNotifier, Notifier, WebhookNotifier
from app.payments.repository import PaymentRepository
from app.payments.service import PaymentService
from app.providers.registry import ProviderRegistry, build_registry


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    repository: PaymentRepository
    allocator: AddressAllocator
    registry: ProviderRegistry
    notifier: Notifier
    payments: PaymentService


def build_services(session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
                   cfg: Settings = settings,
                   verifiers: Optional[dict[str, ChainVerifier]] = None,
                   notifier: Optional[Notifier] = None) -> Services:
    if session_factory is None:
        from app.db.session import AsyncSessionLocal
        session_factory = AsyncSessionLocal
    repository = PaymentRepository(session_factory)
    allocator = AddressAllocator(session_factory, cfg.HD_MNEMONIC, cfg.HD_CHAINS)
    registry = build_registry(cfg, allocator, verifiers)
    if notifier is None:
        notifier = WebhookNotifier(session_factory, cfg.WEBHOOK_URL) if cfg.WEBHOOK_URL else NullNotifier()
    return Services(
        session_factory=session_factory,
        repository=repository,
        allocator=allocator,
        registry=registry,
        notifier=notifier,
        payments=PaymentService(repository, registry, notifier),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Process-wide container for the HTTP app (FastAPI dependency)."""
    global _services
    if _services is None:
        _services = build_services()
    return _services

"""
Network confirmation requirements.
"""
from app.core.config import settings

# Per-chain depth before a transfer counts as final (override via CHAIN_CONFIRMATIONS)
DEFAULT_CHAIN_CONFIRMATIONS = {
    "ethereum": 12,
    "base": 10,
    "polygon": 64,
    "bsc": 3,
    # commitment "finalized" is ~31 slots past "confirmed"
    "solana": 31,
    "stellar": 1,
}

FALLBACK_REQUIRED_CONFIRMATIONS = int(settings.DEFAULT_CONFIRMATIONS)


def required_confirmations_for(chain: str | None) -> int:
    if not chain:
        return FALLBACK_REQUIRED_CONFIRMATIONS
    key = chain.lower()
    overrides = settings.CHAIN_CONFIRMATIONS or {}
    if key in overrides:
        return int(overrides[key])
    return DEFAULT_CHAIN_CONFIRMATIONS.get(key, FALLBACK_REQUIRED_CONFIRMATIONS)

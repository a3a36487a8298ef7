"""
Deterministic key derivation from the platform BIP39 mnemonic.

- EVM chains: BIP44 m/44'/60'/0'/0/{index} via eth-account's HD wallet support.
- Solana: SLIP-0010 ed25519, m/44'/501'/{index}'/0' (all levels hardened), fed
  into a solders Keypair.

These are pure functions of (mnemonic, index). Private keys are only materialised
when signing a sweep and are never logged or persisted.
"""
import hashlib
import hmac
import unicodedata

from eth_account import Account
from solders.keypair import Keypair

EVM_CHAINS = frozenset({"ethereum", "base", "polygon", "bsc", "arbitrum", "optimism"})
SOLANA_CHAINS = frozenset({"solana"})

HARDENED_OFFSET = 0x80000000
ED25519_CURVE_KEY = b"ed25519 seed"

Account.enable_unaudited_hdwallet_features()


def evm_path(index: int) -> str:
    return f"m/44'/60'/0'/0/{index}"


def solana_path(index: int) -> str:
    return f"m/44'/501'/{index}'/0'"


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP39 seed: PBKDF2-HMAC-SHA512, 2048 rounds, salt 'mnemonic' + passphrase."""
    normalized = unicodedata.normalize("NFKD", " ".join(mnemonic.split()))
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase)
    return hashlib.pbkdf2_hmac("sha512", normalized.encode("utf-8"), salt.encode("utf-8"), 2048)


def _parse_hardened_path(path: str) -> list[int]:
    parts = path.split("/")
    if parts[0] != "m":
        raise ValueError(f"derivation path must start with m: {path}")
    indices = []
    for part in parts[1:]:
        if not part.endswith("'"):
            raise ValueError(f"ed25519 derivation supports hardened levels only: {path}")
        indices.append(int(part[:-1]) + HARDENED_OFFSET)
    return indices


def slip10_ed25519_key(seed: bytes, path: str) -> bytes:
    """Return the 32-byte ed25519 private seed for ``path`` (SLIP-0010)."""
    digest = hmac.new(ED25519_CURVE_KEY, seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]
    for index in _parse_hardened_path(path):
        data = b"\x00" + key + index.to_bytes(4, "big")
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        key, chain_code = digest[:32], digest[32:]
    return key


def derive_evm_account(mnemonic: str, index: int):
    return Account.from_mnemonic(mnemonic, account_path=evm_path(index))


def derive_solana_keypair(mnemonic: str, index: int) -> Keypair:
    seed = mnemonic_to_seed(mnemonic)
    return Keypair.from_seed(slip10_ed25519_key(seed, solana_path(index)))


def is_supported(chain: str) -> bool:
    return chain in EVM_CHAINS or chain in SOLANA_CHAINS


def derive_address(mnemonic: str, chain: str, index: int) -> str:
    if index < 0:
        raise ValueError("derivation index must be non-negative")
    if chain in EVM_CHAINS:
        return derive_evm_account(mnemonic, index).address
    if chain in SOLANA_CHAINS:
        return str(derive_solana_keypair(mnemonic, index).pubkey())
    raise ValueError(f"no derivation scheme for chain {chain}")


def derive_signer(mnemonic: str, chain: str, index: int):
    """Return an eth-account LocalAccount or a solders Keypair."""
    if chain in EVM_CHAINS:
        return derive_evm_account(mnemonic, index)
    if chain in SOLANA_CHAINS:
        return derive_solana_keypair(mnemonic, index)
    raise ValueError(f"no derivation scheme for chain {chain}")

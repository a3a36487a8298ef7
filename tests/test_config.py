from app.core.config import Settings
from app.core.sentry import init_sentry


def test_nested_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SOLANA__PLATFORM_WALLET", "So1PlatformWallet")
    monkeypatch.setenv("EVM_CHAINS", '{"base": {"rpc_url": "https://base.rpc.test", "chain_id": 8453, '
                                     '"token_contract": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"}}')
    monkeypatch.setenv("CHAIN_CONFIRMATIONS", '{"base": 20}')
    monkeypatch.setenv("HD_MNEMONIC", "secret words")

    cfg = Settings(_env_file=None)
    assert cfg.SOLANA.platform_wallet == "So1PlatformWallet"
    assert cfg.EVM_CHAINS["base"].chain_id == 8453
    assert cfg.EVM_CHAINS["base"].token_decimals == 6
    assert cfg.CHAIN_CONFIRMATIONS == {"base": 20}
    assert cfg.STELLAR is None


def test_secrets_are_not_rendered(monkeypatch):
    monkeypatch.setenv("HD_MNEMONIC", "secret words")
    cfg = Settings(_env_file=None)
    assert cfg.HD_MNEMONIC.get_secret_value() == "secret words"
    assert "secret words" not in repr(cfg)


def test_sentry_is_skipped_without_dsn():
    assert init_sentry("settlement-tests") is False

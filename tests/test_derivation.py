import base58
import pytest
from eth_utils import is_checksum_address

from cryptopay.errors import DerivationError, UnsupportedCoin
from cryptopay.wallet.derivation import (
    HARDENED, ckd_pub, derive, normalize_extended_key, parse_extended_key,
)

from conftest import BTC_ZPUB, SOL_PUBLIC_KEY, XPUB

XPRV = (
    "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
)


def reversion(extended_key, version_hex):
    payload = base58.b58decode_check(extended_key)
    return base58.b58encode_check(bytes.fromhex(version_hex) + payload[4:]).decode()


def test_bip84_receive_addresses():
    first = derive("BTC", BTC_ZPUB, 0)
    second = derive("BTC", BTC_ZPUB, 1)

    assert first.address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
    assert first.derivation_path == "m/84'/0'/0'/0/0"
    assert second.address == "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"
    assert second.derivation_path == "m/84'/0'/0'/0/1"


def test_bip84_change_address():
    change = derive("BTC", BTC_ZPUB, 0, address_type="change")
    assert change.address == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"
    assert change.derivation_path == "m/84'/0'/0'/1/0"


def test_derivation_is_deterministic():
    assert derive("BTC", BTC_ZPUB, 7) == derive("BTC", BTC_ZPUB, 7)
    assert derive("BTC", BTC_ZPUB, 7) != derive("BTC", BTC_ZPUB, 8)


def test_zpub_normalizes_to_xpub_of_same_key():
    normalized = normalize_extended_key(BTC_ZPUB)
    assert normalized.startswith("xpub")
    assert parse_extended_key(normalized).key == parse_extended_key(BTC_ZPUB).key
    assert derive("BTC", normalized, 3) == derive("BTC", BTC_ZPUB, 3)


@pytest.mark.parametrize("version", ["049d7cb2", "04b24746", "0295b43f", "02aa7ed3", "019da462", "01b26ef6"])
def test_alternate_prefixes_derive_identically(version):
    alternate = reversion(XPUB, version)
    assert normalize_extended_key(alternate) == XPUB
    assert derive("LTC", alternate, 5) == derive("LTC", XPUB, 5)


def test_litecoin_uses_ltc_hrp_and_coin_type():
    derived = derive("LTC", XPUB, 0)
    assert derived.address.startswith("ltc1q")
    assert derived.derivation_path == "m/84'/2'/0'/0/0"


def test_ethereum_address_is_checksummed():
    derived = derive("ETH", XPUB, 0)
    assert derived.address.startswith("0x")
    assert len(derived.address) == 42
    assert is_checksum_address(derived.address)
    assert derived.derivation_path == "m/44'/60'/0'/0/0"


def test_tokens_share_ethereum_derivation():
    assert derive("USDT", XPUB, 4) == derive("ETH", XPUB, 4)
    assert derive("usdc", XPUB, 4) == derive("ETH", XPUB, 4)


def test_solana_seed_addresses():
    first = derive("SOL", SOL_PUBLIC_KEY, 0)
    again = derive("SOL", SOL_PUBLIC_KEY, 0)
    second = derive("SOL", SOL_PUBLIC_KEY, 1)

    assert first == again
    assert first.address != second.address
    assert first.derivation_path == "with_seed/receive-0"
    assert len(base58.b58decode(first.address)) == 32


def test_unknown_coin():
    with pytest.raises(UnsupportedCoin):
        derive("DOGE", XPUB, 0)


def test_private_key_rejected():
    with pytest.raises(DerivationError):
        derive("BTC", XPRV, 0)


def test_bad_checksum_rejected():
    corrupted = XPUB[:-1] + ("9" if XPUB[-1] != "9" else "8")
    with pytest.raises(DerivationError):
        derive("BTC", corrupted, 0)


def test_missing_key():
    with pytest.raises(DerivationError):
        derive("ETH", None, 0)


@pytest.mark.parametrize("index", [-1, HARDENED])
def test_index_out_of_range(index):
    with pytest.raises(DerivationError):
        derive("BTC", BTC_ZPUB, index)


def test_unknown_address_type():
    with pytest.raises(DerivationError):
        derive("BTC", BTC_ZPUB, 0, address_type="cold")


def test_hardened_child_needs_private_key():
    with pytest.raises(DerivationError):
        ckd_pub(parse_extended_key(XPUB), HARDENED)


def test_invalid_solana_key():
    with pytest.raises(DerivationError):
        derive("SOL", "abc", 0)

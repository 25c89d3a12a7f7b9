"""
HD wallet receive-address derivation.

Bitcoin-family and Ethereum addresses are derived with BIP32 public child key
derivation (CKDpub) over secp256k1 from an account-level extended public key,
so the same key and index always produce the same address and the operator's
seed can spend from every derived address. Solana has no public-only child
derivation for ed25519, so receive addresses are system-program accounts
created with a seed from the operator's base public key; funds there are
spendable by the base key holder via transfer-with-seed.
"""

import hashlib
import hmac
import struct
from dataclasses import dataclass
from typing import Callable, Dict

import base58
import bech32
from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from eth_utils import keccak, to_checksum_address

from ..errors import DerivationError, UnsupportedCoin
from ..types.payment_types import DerivedAddress

HARDENED = 0x80000000

XPUB_VERSION = bytes.fromhex("0488b21e")

# mainnet public versions that carry the same key family under other prefixes
PUBLIC_VERSIONS = {
    bytes.fromhex("0488b21e"): "xpub",
    bytes.fromhex("049d7cb2"): "ypub",
    bytes.fromhex("04b24746"): "zpub",
    bytes.fromhex("0295b43f"): "Ypub",
    bytes.fromhex("02aa7ed3"): "Zpub",
    bytes.fromhex("019da462"): "Ltub",
    bytes.fromhex("01b26ef6"): "Mtub",
}

PRIVATE_VERSIONS = {
    bytes.fromhex("0488ade4"),
    bytes.fromhex("049d7878"),
    bytes.fromhex("04b2430c"),
    bytes.fromhex("0295b005"),
    bytes.fromhex("02aa7a99"),
    bytes.fromhex("019d9cfe"),
    bytes.fromhex("01b26792"),
}

SOLANA_SYSTEM_PROGRAM = bytes(32)

COIN_CHAINS = {
    "BTC": "bitcoin",
    "LTC": "litecoin",
    "ETH": "ethereum",
    "USDT": "ethereum",
    "USDC": "ethereum",
    "SOL": "solana",
}

ADDRESS_TYPES = {"receive": 0, "change": 1}


@dataclass(frozen=True)
class ExtendedPublicKey:
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    key: bytes


def _hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def parse_extended_key(extended_key: str) -> ExtendedPublicKey:
    try:
        payload = base58.b58decode_check(extended_key.strip())
    except ValueError as e:
        raise DerivationError(f"Invalid extended key checksum: {e}")

    if len(payload) != 78:
        raise DerivationError(f"Invalid extended key length: {len(payload)}")

    version = payload[:4]
    if version in PRIVATE_VERSIONS:
        raise DerivationError("Private extended keys must never be configured")
    if version not in PUBLIC_VERSIONS:
        raise DerivationError(f"Unsupported extended key version: {version.hex()}")

    key = payload[45:78]
    if key[0] not in (2, 3):
        raise DerivationError("Extended key does not hold a compressed public key")

    return ExtendedPublicKey(
        depth=payload[4],
        parent_fingerprint=payload[5:9],
        child_number=struct.unpack(">L", payload[9:13])[0],
        chain_code=payload[13:45],
        key=key,
    )


def normalize_extended_key(extended_key: str) -> str:
    """Rewrite ypub/zpub/Ltub/... to the canonical xpub encoding of the same key."""
    parse_extended_key(extended_key)
    payload = base58.b58decode_check(extended_key.strip())
    return base58.b58encode_check(XPUB_VERSION + payload[4:]).decode()


def ckd_pub(parent: ExtendedPublicKey, index: int) -> ExtendedPublicKey:
    if index & HARDENED:
        raise DerivationError("Hardened child derivation needs a private key")

    digest = hmac.new(parent.chain_code, parent.key + struct.pack(">L", index), hashlib.sha512).digest()
    il, ir = digest[:32], digest[32:]
    tweak = int.from_bytes(il, "big")
    if tweak >= SECP256k1.order:
        raise DerivationError(f"Invalid child at index {index}")

    parent_point = VerifyingKey.from_string(parent.key, curve=SECP256k1).pubkey.point
    child_point = SECP256k1.generator * tweak + parent_point
    if child_point == INFINITY:
        raise DerivationError(f"Invalid child at index {index}")

    child_key = VerifyingKey.from_public_point(child_point, curve=SECP256k1).to_string("compressed")
    return ExtendedPublicKey(
        depth=parent.depth + 1,
        parent_fingerprint=_hash160(parent.key)[:4],
        child_number=index,
        chain_code=ir,
        key=child_key,
    )


def _segwit_encoder(hrp: str) -> Callable[[bytes], str]:
    def encode(public_key: bytes) -> str:
        address = bech32.encode(hrp, 0, _hash160(public_key))
        if address is None:
            raise DerivationError("bech32 encoding failed")
        return address
    return encode


def _ethereum_address(public_key: bytes) -> str:
    uncompressed = VerifyingKey.from_string(public_key, curve=SECP256k1).to_string("uncompressed")
    return to_checksum_address(keccak(uncompressed[1:])[-20:])


@dataclass(frozen=True)
class DerivationScheme:
    purpose: int
    coin_type: int
    encode: Callable[[bytes], str]

    def path(self, change: int, index: int) -> str:
        return f"m/{self.purpose}'/{self.coin_type}'/0'/{change}/{index}"


SCHEMES: Dict[str, DerivationScheme] = {
    "bitcoin": DerivationScheme(84, 0, _segwit_encoder("bc")),
    "litecoin": DerivationScheme(84, 2, _segwit_encoder("ltc")),
    "ethereum": DerivationScheme(44, 60, _ethereum_address),
}


def _derive_solana(base_key: str, index: int, address_type: str) -> DerivedAddress:
    try:
        base = base58.b58decode(base_key.strip())
    except ValueError as e:
        raise DerivationError(f"Invalid Solana public key: {e}")
    if len(base) != 32:
        raise DerivationError(f"Invalid Solana public key length: {len(base)}")

    seed = f"{address_type}-{index}"
    digest = hashlib.sha256(base + seed.encode() + SOLANA_SYSTEM_PROGRAM).digest()
    return DerivedAddress(
        address=base58.b58encode(digest).decode(),
        derivation_path=f"with_seed/{seed}",
    )


def derive(coin: str, extended_key: str, index: int, address_type: str = "receive") -> DerivedAddress:
    chain = COIN_CHAINS.get((coin or "").upper())
    if chain is None:
        raise UnsupportedCoin(f"Unsupported coin: {coin}")
    if not extended_key:
        raise DerivationError(f"Missing public key for {coin}")
    if address_type not in ADDRESS_TYPES:
        raise DerivationError(f"Unknown address type: {address_type}")
    if index < 0 or index >= HARDENED:
        raise DerivationError(f"Derivation index out of range: {index}")

    if chain == "solana":
        return _derive_solana(extended_key, index, address_type)

    scheme = SCHEMES[chain]
    change = ADDRESS_TYPES[address_type]
    account = parse_extended_key(normalize_extended_key(extended_key))
    child = ckd_pub(ckd_pub(account, change), index)
    return DerivedAddress(
        address=scheme.encode(child.key),
        derivation_path=scheme.path(change, index),
    )

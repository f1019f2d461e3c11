"""
HD account derivation and signing.
"""

from hdfund.wallet.bip32 import HDKey, mnemonic_to_seed
from hdfund.wallet.deriver import (
    DEFAULT_PATH_TEMPLATE,
    AccountDeriver,
    AccountRange,
    SignedTransfer,
    Signer,
)

__all__ = [
    "AccountDeriver",
    "AccountRange",
    "DEFAULT_PATH_TEMPLATE",
    "HDKey",
    "SignedTransfer",
    "Signer",
    "mnemonic_to_seed",
]

"""
Deterministic account derivation from a master seed.

Accounts are derived along a path template with a single ``{index}``
placeholder, e.g. ``m/44'/60'/{index}'/0/0``. Each account's address is the
EVM address of the derived secp256k1 key. Private keys are only materialized
inside a ``signer()`` scope.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from eth_account import Account as EthAccount
from eth_utils import to_checksum_address
from loguru import logger

from hdfund.chain.base import FeeQuote
from hdfund.errors import DerivationError
from hdfund.models import Account
from hdfund.wallet.bip32 import HDKey, mnemonic_to_seed, parse_path

DEFAULT_PATH_TEMPLATE = "m/44'/60'/{index}'/0/0"
DEFAULT_MAX_ACCOUNTS = 1000


@dataclass(frozen=True)
class SignedTransfer:
    """A signed value transfer ready for submission."""

    tx_id: str
    raw: str


class Signer:
    """
    Signing capability for one account.

    Obtained from ``AccountDeriver.signer()``; unusable once that scope exits.
    """

    def __init__(self, account: Account, key: HDKey):
        self.account = account
        self._local = EthAccount.from_key(key.get_private_key_bytes())

    def __repr__(self) -> str:
        return f"Signer(index={self.account.index}, address={self.account.address})"

    def sign_transfer(
        self, to: str, value: int, nonce: int, fee: FeeQuote, chain_id: int
    ) -> SignedTransfer:
        """Sign a plain value transfer."""
        if self._local is None:
            raise RuntimeError(f"Signer for account {self.account.index} has been released")

        tx = {
            "to": to_checksum_address(to),
            "value": value,
            "nonce": nonce,
            "gas": fee.gas_limit,
            "gasPrice": fee.gas_price,
            "chainId": chain_id,
        }
        signed = self._local.sign_transaction(tx)
        return SignedTransfer(
            tx_id="0x" + bytes(signed.hash).hex(),
            raw="0x" + bytes(signed.raw_transaction).hex(),
        )

    def _release(self) -> None:
        self._local = None


class AccountDeriver:
    """
    Derives accounts from a master seed.
    The seed never leaves this object.
    """

    def __init__(
        self,
        seed: bytes,
        path_template: str = DEFAULT_PATH_TEMPLATE,
        max_accounts: int = DEFAULT_MAX_ACCOUNTS,
    ):
        validate_template(path_template)
        if max_accounts < 1:
            raise DerivationError("max_accounts must be >= 1")

        self._master_key = HDKey.from_seed(seed)
        self.path_template = path_template
        self.max_accounts = max_accounts
        self._cache: dict[int, Account] = {}

    def __repr__(self) -> str:
        return f"AccountDeriver(path_template={self.path_template!r})"

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        passphrase: str = "",
        path_template: str = DEFAULT_PATH_TEMPLATE,
        max_accounts: int = DEFAULT_MAX_ACCOUNTS,
    ) -> AccountDeriver:
        return cls(mnemonic_to_seed(mnemonic, passphrase), path_template, max_accounts)

    def path_for(self, index: int) -> str:
        if index < 0 or index >= self.max_accounts:
            raise DerivationError(
                f"Account index {index} outside allowed range 0..{self.max_accounts - 1}"
            )
        return self.path_template.format(index=index)

    def derive(self, index: int) -> Account:
        """Derive the account at `index`. Same seed, template and index give the same account."""
        if index in self._cache:
            return self._cache[index]

        path = self.path_for(index)
        key = self._derive_key(path)
        address = EthAccount.from_key(key.get_private_key_bytes()).address
        account = Account(index=index, address=address, path=path)
        self._cache[index] = account
        logger.debug(f"Derived account {index}: {address}")
        return account

    def derive_range(self, start: int, count: int) -> AccountRange:
        """Lazy, restartable sequence of `count` accounts starting at `start`."""
        return AccountRange(self, start, count)

    @contextmanager
    def signer(self, account: Account) -> Iterator[Signer]:
        """Scoped signing capability for `account`."""
        if self.derive(account.index) != account:
            raise DerivationError(f"Account {account.index} was not derived from this seed")

        signer = Signer(account, self._derive_key(account.path))
        try:
            yield signer
        finally:
            signer._release()

    def _derive_key(self, path: str) -> HDKey:
        try:
            return self._master_key.derive(path)
        except ValueError as e:
            raise DerivationError(f"Cannot derive {path}: {e}") from e


class AccountRange:
    """Iterable over a contiguous block of accounts; derivation happens on iteration."""

    def __init__(self, deriver: AccountDeriver, start: int, count: int):
        if start < 0 or count < 0:
            raise DerivationError("start and count must be non-negative")
        if start + count > deriver.max_accounts:
            raise DerivationError(
                f"Range {start}..{start + count - 1} exceeds maximum of "
                f"{deriver.max_accounts} accounts"
            )
        self._deriver = deriver
        self.start = start
        self.count = count

    def __iter__(self) -> Iterator[Account]:
        for index in range(self.start, self.start + self.count):
            yield self._deriver.derive(index)

    def __len__(self) -> int:
        return self.count


def validate_template(template: str) -> None:
    """
    Check a derivation path template.

    Raises:
        DerivationError: If the template lacks exactly one {index} placeholder
            or is not a valid derivation path
    """
    if template.count("{index}") != 1:
        raise DerivationError(
            f"Path template must contain exactly one {{index}} placeholder: {template!r}"
        )
    try:
        parse_path(template.replace("{index}", "0"))
    except ValueError as e:
        raise DerivationError(f"Malformed path template {template!r}: {e}") from e
    try:
        template.format(index=0)
    except (KeyError, IndexError, ValueError) as e:
        raise DerivationError(f"Malformed path template {template!r}: {e}") from e

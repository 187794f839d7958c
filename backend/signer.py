import logging
from typing import Callable

from algosdk import account, mnemonic, transaction

from errors import SignatureRejectedError, SignerUnavailableError

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[transaction.Transaction], bool]


class WalletSigner:
    """A key custodian asked to approve and sign one transaction at a time."""

    address: str | None = None

    def sign(self, txn: transaction.Transaction) -> transaction.SignedTransaction:
        raise NotImplementedError


def _approve_all(txn: transaction.Transaction) -> bool:
    return True


class LocalKeySigner(WalletSigner):
    """Signs with a locally held key after ``approve`` accepts the transaction.

    ``approve`` stands in for the wallet's confirmation prompt; it may block
    for as long as the user takes to decide.
    """

    def __init__(self, private_key: str, approve: ApprovalCallback | None = None) -> None:
        self.private_key = private_key
        self.address = account.address_from_private_key(private_key)
        self.approve = approve or _approve_all

    @classmethod
    def from_mnemonic(cls, phrase: str, approve: ApprovalCallback | None = None) -> "LocalKeySigner":
        if not phrase:
            raise SignerUnavailableError("A wallet mnemonic is required")
        try:
            private_key = mnemonic.to_private_key(phrase)
        except Exception as exc:  # noqa: BLE001
            raise SignerUnavailableError(f"Wallet mnemonic is invalid: {exc}") from exc
        return cls(private_key, approve=approve)

    def sign(self, txn: transaction.Transaction) -> transaction.SignedTransaction:
        if txn.sender != self.address:
            raise SignerUnavailableError("Transaction sender does not match the wallet address")
        if not self.approve(txn):
            logger.info("Signature request declined for %s", self.address)
            raise SignatureRejectedError("User rejected the signature request")
        return txn.sign(self.private_key)

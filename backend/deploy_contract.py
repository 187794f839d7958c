import argparse
import base64
import logging
import os
from datetime import datetime

from algosdk import error, logic, transaction
from algosdk.v2client import algod

from config import configure_logging, load_settings
from ledger_client import AlgorandLedgerClient
from signer import LocalKeySigner, WalletSigner
from smart_contract import compile_contract

logger = logging.getLogger(__name__)

# Minimum balance the application account must hold: the account itself plus
# every box it owns, at 2500 + 400 * (key + value bytes) microAlgos per box.
ACCOUNT_MIN_BALANCE = 100_000
BOX_FLAT_MICROALGOS = 2_500
BOX_BYTE_MICROALGOS = 400
CONFIRMATION_ROUNDS = 10


def box_cost(key_len: int, value_len: int) -> int:
    return BOX_FLAT_MICROALGOS + BOX_BYTE_MICROALGOS * (key_len + value_len)


# "v" + election id + voter address, holding candidate id and commit round
VOTE_BOX_MICROALGOS = box_cost(1 + 8 + 32, 8 + 8)


def funding_for(voters: int, elections: int = 1, candidates_per_election: int = 8, text_bytes: int = 256) -> int:
    """MicroAlgos the app account needs for ``voters`` votes across ``elections``.

    ``text_bytes`` budgets each election's title and description, and each
    candidate's name and party, combined.
    """
    election = box_cost(9, 32) + 2 * box_cost(10, 0) + BOX_BYTE_MICROALGOS * text_bytes
    candidate = box_cost(17, 8) + 2 * box_cost(18, 0) + BOX_BYTE_MICROALGOS * text_bytes
    return (
        ACCOUNT_MIN_BALANCE
        + elections * (election + candidates_per_election * candidate)
        + voters * VOTE_BOX_MICROALGOS
    )


def default_funding() -> int:
    if os.getenv("ALGORAND_APP_FUNDING_MICROALGOS"):
        return int(os.environ["ALGORAND_APP_FUNDING_MICROALGOS"])
    return funding_for(int(os.getenv("ALGORAND_EXPECTED_VOTERS", "100")))


def _confirm(client: algod.AlgodClient, txid: str) -> dict:
    try:
        return transaction.wait_for_confirmation(client, txid, CONFIRMATION_ROUNDS)
    except (error.ConfirmationTimeoutError, error.TransactionRejectedError) as exc:
        raise RuntimeError(f"Transaction {txid} failed: {exc}") from exc


def deploy_application(client: algod.AlgodClient, signer: WalletSigner, funding: int | None = None) -> int:
    """Create the voting application and fund its account; returns the app id.

    Every vote stores a voter box, so an underfunded account makes further
    votes fail on-chain. Size ``funding`` with ``funding_for``.
    """
    funding = default_funding() if funding is None else funding
    approval_teal, clear_teal = compile_contract()
    approval_program = base64.b64decode(client.compile(approval_teal)["result"])
    clear_program = base64.b64decode(client.compile(clear_teal)["result"])

    txn = transaction.ApplicationCreateTxn(
        sender=signer.address,
        sp=client.suggested_params(),
        on_complete=transaction.OnComplete.NoOpOC,
        approval_program=approval_program,
        clear_program=clear_program,
        global_schema=transaction.StateSchema(num_uints=1, num_byte_slices=1),
        local_schema=transaction.StateSchema(0, 0),
    )
    txid = client.send_transaction(signer.sign(txn))
    app_id = int(_confirm(client, txid)["application-index"])
    logger.info("Created application %s in transaction %s", app_id, txid)

    if funding > 0:
        payment = transaction.PaymentTxn(
            sender=signer.address,
            sp=client.suggested_params(),
            receiver=logic.get_application_address(app_id),
            amt=funding,
        )
        payment_txid = client.send_transaction(signer.sign(payment))
        _confirm(client, payment_txid)
        logger.info("Funded application account with %d microAlgos", funding)
    return app_id


def _timestamp(value: str) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def main() -> None:
    ap = argparse.ArgumentParser(description="Deploy and administer the voting application.")
    sub = ap.add_subparsers(dest="command", required=True)
    deploy = sub.add_parser("deploy", help="Create the application and fund its account")
    deploy.add_argument("--voters", type=int, default=None, help="Votes to fund box storage for")
    deploy.add_argument("--elections", type=int, default=1)

    create = sub.add_parser("create-election", help="Create an election")
    create.add_argument("--title", required=True)
    create.add_argument("--description", default="")
    create.add_argument("--start", default="", help="ISO-8601 opening time (default: open immediately)")
    create.add_argument("--end", default="", help="ISO-8601 closing time (default: no deadline)")

    candidate = sub.add_parser("add-candidate", help="Add a candidate to an election")
    candidate.add_argument("--election", type=int, required=True)
    candidate.add_argument("--name", required=True)
    candidate.add_argument("--party", default="")

    close = sub.add_parser("close-election", help="Close an election for good")
    close.add_argument("--election", type=int, required=True)

    args = ap.parse_args()

    settings = load_settings()
    configure_logging(settings.log_level)
    signer = LocalKeySigner.from_mnemonic(settings.service_mnemonic)

    if args.command == "deploy":
        if not settings.algod_address:
            raise RuntimeError("ALGORAND_ALGOD_ADDRESS is required")
        headers = {"X-API-Key": settings.algod_token} if settings.algod_token else {}
        client = algod.AlgodClient(settings.algod_token, settings.algod_address, headers=headers)
        funding = None
        if args.voters is not None:
            funding = funding_for(args.voters, elections=args.elections)
        print("app_id:", deploy_application(client, signer, funding))
        return

    ledger = AlgorandLedgerClient.from_settings(settings)
    if args.command == "create-election":
        election_id = ledger.create_election(
            signer,
            args.title,
            args.description,
            start_at=_timestamp(args.start),
            end_at=_timestamp(args.end),
        )
        print("election_id:", election_id)
    elif args.command == "add-candidate":
        print("candidate_id:", ledger.add_candidate(signer, args.election, args.name, args.party))
    elif args.command == "close-election":
        receipt = ledger.close_election(signer, args.election)
        print("closed in round:", receipt.block_number)


if __name__ == "__main__":
    main()

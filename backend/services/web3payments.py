"""
On-chain payment verification.

The customer pays to the platform address (USDC or the native coin) and
submits the transaction hash. The hash is checked against the node before
the payment goes through the same completion path as a card webhook. Any
rejected check leaves the payment PENDING so the customer can retry with
the right transaction.
"""

import re
from dataclasses import dataclass
from typing import Optional

import requests
from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from backend.errors import InvalidInputError, NotFoundError, StateConflictError, UpstreamError, VerificationError
from backend.models import Payment, PaymentStatus
from backend.schemas import Actor
from backend.services.chain import ChainClient, JsonRpcClient, RpcError, hex_to_int
from backend.services.dispatch import Dispatcher, default_dispatcher
from backend.services.orders import ensure_staff_or_owner, get_order
from backend.services.payments import after_completion, complete_payment
from pricing.config import settings
from pricing.src.money import to_base_units

TX_HASH_RE = re.compile(r"^0x[A-Fa-f0-9]{64}$")

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass
class Web3Config:
    chain_id: int = settings.WEB3_CHAIN_ID
    confirmations: int = settings.WEB3_CONFIRMATIONS
    platform_address: str = settings.PLATFORM_RECEIVE_ADDRESS
    token_address: str = settings.USDC_TOKEN_ADDRESS
    token_decimals: int = settings.USDC_DECIMALS
    native_decimals: int = settings.NATIVE_DECIMALS
    enforce_amount: bool = settings.WEB3_ENFORCE_AMOUNT


@dataclass
class Transfer:
    to: Optional[str]
    amount: int
    native: bool


def _norm(address: Optional[str]) -> str:
    return (address or "").lower()


def parse_token_transfer(receipt: dict, token_address: str, platform_address: str) -> Optional[Transfer]:
    """First ERC-20 Transfer log of ``token_address`` paying ``platform_address``."""
    token = _norm(token_address)
    platform = _norm(platform_address)
    for log in receipt.get("logs") or []:
        if _norm(log.get("address")) != token:
            continue
        topics = [t.lower() for t in log.get("topics") or []]
        if len(topics) < 3 or topics[0] != TRANSFER_TOPIC:
            continue
        # indexed address topics are left-padded to 32 bytes
        if platform and not topics[2].endswith(platform[2:]):
            continue
        try:
            amount = int(log.get("data") or "0x0", 16)
        except ValueError:
            continue
        return Transfer(to=platform or None, amount=amount, native=False)
    return None


def _rpc(label: str, fn, *args):
    try:
        return fn(*args)
    except (requests.RequestException, RpcError) as e:
        logger.warning(f"RPC {label} failed: {e}")
        raise UpstreamError("RPC_UNAVAILABLE", "Blockchain node is unavailable")


def verify_transfer(client: ChainClient, tx_hash: str, payment: Payment, config: Web3Config) -> Transfer:
    """Raises VerificationError / UpstreamError; touches no database state."""
    chain_id = _rpc("eth_chainId", client.chain_id)
    if config.chain_id and chain_id != config.chain_id:
        raise VerificationError("WRONG_CHAIN", f"Expected chain {config.chain_id}, node is on {chain_id}",
                                {"expected": config.chain_id, "got": chain_id})

    receipt = _rpc("eth_getTransactionReceipt", client.get_receipt, tx_hash)
    if not receipt or receipt.get("blockNumber") is None:
        raise VerificationError("TX_NOT_FOUND", f"Transaction {tx_hash} not found or not mined")

    head = _rpc("eth_blockNumber", client.block_number)
    confirmations = head - hex_to_int(receipt["blockNumber"]) + 1
    if confirmations < config.confirmations:
        raise VerificationError("TX_NOT_CONFIRMED", f"{confirmations} of {config.confirmations} confirmations",
                                {"confirmations": confirmations, "required": config.confirmations})

    if hex_to_int(receipt.get("status")) != 1:
        raise VerificationError("TX_FAILED", f"Transaction {tx_hash} reverted")

    transfer = None
    if config.token_address:
        transfer = parse_token_transfer(receipt, config.token_address, config.platform_address)
    if transfer is None:
        tx = _rpc("eth_getTransactionByHash", client.get_transaction, tx_hash)
        if not tx:
            raise VerificationError("TX_NOT_FOUND", f"Transaction {tx_hash} not found")
        transfer = Transfer(to=tx.get("to"), amount=hex_to_int(tx.get("value")) or 0, native=True)
        if config.platform_address and _norm(transfer.to) != _norm(config.platform_address):
            raise VerificationError("DEST_MISMATCH", "Transaction does not pay the platform address",
                                    {"expected": config.platform_address, "got": transfer.to})

    if config.enforce_amount:
        decimals = config.native_decimals if transfer.native else config.token_decimals
        expected = to_base_units(payment.amount, decimals)
        if transfer.amount != expected:
            raise VerificationError("AMOUNT_MISMATCH", "Transferred amount does not match the invoice",
                                    {"expected": str(expected), "got": str(transfer.amount)})
    return transfer


def verify_and_complete_web3_payment(
    session: Session,
    order_id: int,
    payment_id: int,
    tx_hash: str,
    actor: Actor,
    client: Optional[ChainClient] = None,
    config: Optional[Web3Config] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Payment:
    if not TX_HASH_RE.match(tx_hash or ""):
        raise VerificationError("INVALID_TX_HASH", "Transaction hash must be 0x followed by 64 hex characters")

    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("PAYMENT_NOT_FOUND", f"Payment {payment_id} not found")
    if payment.order_id != order_id:
        raise InvalidInputError("ORDER_MISMATCH", f"Payment {payment_id} does not belong to order {order_id}")
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    if payment.status == PaymentStatus.COMPLETED:
        return payment

    tx_hash = tx_hash.lower()
    used = session.exec(select(Payment).where(Payment.tx_hash == tx_hash, Payment.id != payment.id)).first()
    if used is not None:
        raise StateConflictError("TX_ALREADY_USED", f"Transaction already settled payment {used.id}")

    config = config or Web3Config()
    try:
        transfer = verify_transfer(client or JsonRpcClient(), tx_hash, payment, config)
    except VerificationError as e:
        logger.warning(f"Web3 verification rejected for payment {payment.id}: {e.code}")
        raise

    payment.tx_hash = tx_hash
    complete_payment(
        session,
        payment,
        "Payment completed (web3)",
        {
            "tx_hash": tx_hash,
            "network": "evm",
            "chain_id": config.chain_id,
            "token": "NATIVE" if transfer.native else "USDC",
        },
        actor_id=actor.id,
    )
    try:
        session.commit()
    except IntegrityError:
        # another request settled a payment with this hash after the check above
        session.rollback()
        logger.warning(f"Transaction {tx_hash[:10]}... was claimed concurrently, payment {payment_id} stays PENDING")
        raise StateConflictError("TX_ALREADY_USED", "Transaction already settled another payment")
    session.refresh(payment)
    logger.info(f"Payment {payment.id} completed on-chain ({tx_hash[:10]}...)")

    after_completion(dispatcher or default_dispatcher(), payment)
    return payment

"""Polygon hot wallet — USDC transfers, balances, receipts, CTF redemption.

web3.py is synchronous; every RPC call is pushed to a worker thread so the
event loop keeps ticking while the node answers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from degenwizard.chain.transactions import (
    FeeMarketTxRequest,
    LegacyTxRequest,
    from_built_transaction,
)
from degenwizard.config import ChainConfig
from degenwizard.errors import ChainMismatchError, GatewayError, InvalidWalletError
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

USDC_DECIMALS = 6

ERC20_ABI = [
    {"inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "name": "transfer", "outputs": [{"name": "", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "account", "type": "address"}],
     "name": "balanceOf", "outputs": [{"name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]

CTF_ABI = [
    {"inputs": [{"name": "collateralToken", "type": "address"},
                {"name": "parentCollectionId", "type": "bytes32"},
                {"name": "conditionId", "type": "bytes32"},
                {"name": "indexSets", "type": "uint256[]"}],
     "name": "redeemPositions", "outputs": [],
     "stateMutability": "nonpayable", "type": "function"},
]

_PARENT_COLLECTION = b"\x00" * 32


def is_valid_address(address: str) -> bool:
    try:
        return Web3.is_address(address)
    except (TypeError, ValueError):
        return False


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksummed form, or raise InvalidWalletError."""
    address = (address or "").strip()
    if not is_valid_address(address):
        raise InvalidWalletError(f"Not a valid EVM address: {address!r}")
    return Web3.to_checksum_address(address)


def format_address(address: str | None) -> str:
    if not address:
        return "Not set"
    return f"{address[:6]}...{address[-4:]}"


def usdc_to_units(amount_usd: float) -> int:
    return int(Decimal(f"{amount_usd:.2f}") * (10 ** USDC_DECIMALS))


@dataclass
class SignedTx:
    raw: bytes
    tx_hash: str


@dataclass
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainWallet:
    """Single hot wallet on Polygon."""

    def __init__(self, config: ChainConfig, rpc_url: str, private_key: str):
        self._config = config
        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self._account = Account.from_key(private_key)
        self._usdc = self._w3.eth.contract(
            address=Web3.to_checksum_address(config.usdc_contract), abi=ERC20_ABI,
        )
        self._ctf = self._w3.eth.contract(
            address=Web3.to_checksum_address(config.ctf_contract), abi=CTF_ABI,
        )
        self._chain_verified = False

    @property
    def address(self) -> str:
        return self._account.address

    async def ensure_chain(self) -> None:
        """Refuse to send anything if the RPC is on another chain."""
        if self._chain_verified:
            return
        remote = await asyncio.to_thread(lambda: self._w3.eth.chain_id)
        if remote != self._config.chain_id:
            raise ChainMismatchError(
                f"RPC reports chain {remote}, configured chain is {self._config.chain_id}"
            )
        self._chain_verified = True

    # ── Balances ─────────────────────────────────────────────────────

    async def gas_balance(self) -> float:
        wei = await asyncio.to_thread(self._w3.eth.get_balance, self.address)
        return float(Web3.from_wei(wei, "ether"))

    async def has_gas(self) -> bool:
        return await self.gas_balance() >= self._config.min_gas_balance

    async def usdc_balance(self, address: str | None = None) -> float:
        owner = Web3.to_checksum_address(address or self.address)
        units = await asyncio.to_thread(self._usdc.functions.balanceOf(owner).call)
        return units / (10 ** USDC_DECIMALS)

    # ── Transfers ────────────────────────────────────────────────────

    async def build_transfer(
        self, recipient: str, amount_usd: float,
    ) -> LegacyTxRequest | FeeMarketTxRequest:
        """Build (but do not sign) a USDC transfer with a fresh nonce."""
        await self.ensure_chain()
        to = normalize_address(recipient)
        amount = usdc_to_units(amount_usd)

        def _build() -> dict[str, Any]:
            nonce = self._w3.eth.get_transaction_count(self.address, "pending")
            return self._usdc.functions.transfer(to, amount).build_transaction({
                "from": self.address,
                "nonce": nonce,
                "chainId": self._config.chain_id,
            })

        built = await asyncio.to_thread(_build)
        return from_built_transaction(built)

    def sign(self, request: LegacyTxRequest | FeeMarketTxRequest) -> SignedTx:
        signed = self._account.sign_transaction(request.to_web3())
        return SignedTx(raw=bytes(signed.raw_transaction), tx_hash=Web3.to_hex(signed.hash))

    async def broadcast(self, signed: SignedTx) -> str:
        await self.ensure_chain()
        tx_hash = await asyncio.to_thread(self._w3.eth.send_raw_transaction, signed.raw)
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt | None:
        """Wait up to ``timeout`` seconds; ``None`` means still pending."""
        try:
            receipt = await asyncio.to_thread(
                self._w3.eth.wait_for_transaction_receipt, tx_hash, timeout,
            )
        except TimeExhausted:
            return None
        return TxReceipt(
            tx_hash=tx_hash, status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
        )

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        try:
            receipt = await asyncio.to_thread(self._w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        return TxReceipt(
            tx_hash=tx_hash, status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
        )

    async def transaction_known(self, tx_hash: str) -> bool:
        try:
            await asyncio.to_thread(self._w3.eth.get_transaction, tx_hash)
        except TransactionNotFound:
            return False
        return True

    # ── Redemption ───────────────────────────────────────────────────

    async def redeem_positions(self, condition_id: str, index_sets: list[int]) -> str:
        """Redeem a resolved condition so the USDC returns to the wallet."""
        await self.ensure_chain()
        cid_hex = condition_id[2:] if condition_id.startswith("0x") else condition_id

        def _redeem() -> str:
            nonce = self._w3.eth.get_transaction_count(self.address, "pending")
            tx = self._ctf.functions.redeemPositions(
                Web3.to_checksum_address(self._config.usdc_contract),
                _PARENT_COLLECTION,
                bytes.fromhex(cid_hex),
                index_sets,
            ).build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gas": self._config.redeem_gas_limit,
                "chainId": self._config.chain_id,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
            if receipt["status"] != 1:
                raise GatewayError(f"redeemPositions reverted: {Web3.to_hex(tx_hash)}")
            return Web3.to_hex(tx_hash)

        tx_hash = await asyncio.to_thread(_redeem)
        log.info("wallet.redeemed", condition_id=condition_id, tx_hash=tx_hash)
        return tx_hash

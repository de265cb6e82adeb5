"""Serialized transaction requests for payout transfers.

A payout persists its unsigned transaction before signing so that a resend
after a crash reuses the same nonce and fee fields. The stored form is a
JSON object tagged by ``type``:

  - ``0`` legacy: requires ``gasPrice``; EIP-1559 fee fields are rejected
  - ``2`` fee-market: requires ``maxFeePerGas`` and ``maxPriorityFeePerGas``;
    ``gasPrice`` is rejected

Both carry ``to``, ``data``, ``value``, ``nonce``, ``gasLimit``, ``chainId``.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from degenwizard.errors import TxRequestError


class _TxRequestBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    to: str
    data: str
    value: int = Field(ge=0)
    nonce: int = Field(ge=0)
    gas_limit: int = Field(alias="gasLimit", gt=0)
    chain_id: int = Field(alias="chainId", gt=0)

    def to_web3(self) -> dict[str, Any]:
        """Dict accepted by ``Account.sign_transaction``."""
        return {
            "to": self.to,
            "data": self.data,
            "value": self.value,
            "nonce": self.nonce,
            "gas": self.gas_limit,
            "chainId": self.chain_id,
        }

    def serialize(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), sort_keys=True)


class LegacyTxRequest(_TxRequestBase):
    type: Literal[0] = 0
    gas_price: int = Field(alias="gasPrice", gt=0)

    def to_web3(self) -> dict[str, Any]:
        tx = super().to_web3()
        tx["gasPrice"] = self.gas_price
        return tx


class FeeMarketTxRequest(_TxRequestBase):
    type: Literal[2] = 2
    max_fee_per_gas: int = Field(alias="maxFeePerGas", gt=0)
    max_priority_fee_per_gas: int = Field(alias="maxPriorityFeePerGas", ge=0)

    def to_web3(self) -> dict[str, Any]:
        tx = super().to_web3()
        tx["type"] = 2
        tx["maxFeePerGas"] = self.max_fee_per_gas
        tx["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        return tx


TxRequest = Annotated[Union[LegacyTxRequest, FeeMarketTxRequest], Field(discriminator="type")]

_adapter: TypeAdapter[TxRequest] = TypeAdapter(TxRequest)


def parse_tx_request(data: dict[str, Any]) -> LegacyTxRequest | FeeMarketTxRequest:
    """Validate a raw mapping into the matching request variant."""
    if data.get("type") is None:
        raise TxRequestError("Missing tx field: type")
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise TxRequestError(f"Invalid tx request: {e}") from e


def deserialize_tx_request(raw: str | None) -> LegacyTxRequest | FeeMarketTxRequest | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TxRequestError(f"Stored tx request is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise TxRequestError("Stored tx request must be an object")
    return parse_tx_request(data)


def from_built_transaction(tx: dict[str, Any]) -> LegacyTxRequest | FeeMarketTxRequest:
    """Convert a web3 ``build_transaction`` result into a typed request.

    web3 leaves ``type`` out when it picks the fee model itself, so the type
    is inferred from which fee fields are present.
    """
    raw_type = tx.get("type")
    if isinstance(raw_type, str):
        raw_type = int(raw_type, 16)
    if raw_type is None:
        if "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx:
            raw_type = 2
        elif "gasPrice" in tx:
            raw_type = 0
    data: dict[str, Any] = {
        "to": tx.get("to"),
        "data": tx.get("data", "0x"),
        "value": tx.get("value", 0),
        "nonce": tx.get("nonce"),
        "gasLimit": tx.get("gas"),
        "chainId": tx.get("chainId"),
        "type": raw_type,
    }
    for key in ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas"):
        if key in tx:
            data[key] = tx[key]
    return parse_tx_request(data)

# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class TransferRequest:
    amount: Decimal
    currency: str
    account_name: str
    account_number: str
    bank_code: str
    reference: str


@dataclass(frozen=True)
class TransferResult:
    reference: str
    chapa_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    attempts: int = 1
    response: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class TransferVerification:
    reference: str
    status: Optional[str]
    chapa_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    response: Optional[dict[str, Any]] = None


class TransferClient(Protocol):
    def create_transfer(self, request: TransferRequest) -> TransferResult: ...
    def verify_transfer(self, reference: str) -> TransferVerification: ...
    def get_banks(self) -> Any: ...

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Sequence

import requests

from app.payouts.errors import PermanentTransferError, TransferError, TransientTransferError
from app.providers.base import TransferRequest, TransferResult, TransferVerification

BASE_URL = "https://api.chapa.co"
TRANSFER_TIMEOUT_S = 15.0
TRANSFER_RETRY_DELAYS_S = (0.5, 1.5)

logger = logging.getLogger("payouts.chapa")


class ChapaTransferClient:
    """
    Chapa bank transfer API.

    create_transfer makes at most len(retry_delays) + 1 calls, sleeping the
    fixed delay between them. HTTP errors, a payload status other than
    "success" and network failures all draw from the same budget.
    """

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = BASE_URL,
        timeout_s: float = TRANSFER_TIMEOUT_S,
        retry_delays: Sequence[float] = TRANSFER_RETRY_DELAYS_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.secret_key = (secret_key or "").strip()
        self.base_url = (base_url or BASE_URL).rstrip("/")
        self.timeout_s = timeout_s
        self.retry_delays = tuple(retry_delays)
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise PermanentTransferError("Chapa secret key is not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def create_transfer(self, request: TransferRequest) -> TransferResult:
        headers = self._headers()
        url = f"{self.base_url}/v1/transfers"
        body = {
            "amount": str(request.amount),
            "currency": request.currency,
            "account_name": request.account_name,
            "account_number": request.account_number,
            "bank_code": request.bank_code,
            "reference": request.reference,
        }

        max_calls = len(self.retry_delays) + 1
        last_error = "Transfer request failed"
        transient = False

        for attempt in range(1, max_calls + 1):
            try:
                resp = requests.post(url, headers=headers, json=body, timeout=self.timeout_s)
            except requests.Timeout:
                last_error = f"Transfer request timed out after {int(self.timeout_s * 1000)}ms"
                transient = True
            except requests.RequestException as e:
                last_error = f"Transfer request failed: {type(e).__name__}"
                transient = True
            else:
                payload = _safe_json(resp)
                if _is_success(resp.status_code) and isinstance(payload, dict) and payload.get("status") == "success":
                    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
                    logger.info(
                        "chapa transfer accepted reference=%s attempt=%s http_status=%s",
                        request.reference,
                        attempt,
                        resp.status_code,
                    )
                    return TransferResult(
                        reference=request.reference,
                        chapa_reference=data.get("chapa_reference") or data.get("reference"),
                        bank_reference=data.get("bank_reference"),
                        attempts=attempt,
                        response=payload,
                    )
                last_error = _error_message(payload, resp.status_code)
                transient = False

            logger.warning(
                "chapa transfer attempt failed reference=%s attempt=%s/%s error=%s",
                request.reference,
                attempt,
                max_calls,
                last_error,
            )
            if attempt < max_calls:
                delay = self.retry_delays[attempt - 1]
                if delay > 0:
                    self._sleep(delay)

        error_cls = TransientTransferError if transient else PermanentTransferError
        raise error_cls(
            f"{last_error}. Reference: {request.reference}. Attempts: {max_calls}.",
            reference=request.reference,
            attempts=max_calls,
        )

    def verify_transfer(self, reference: str) -> TransferVerification:
        headers = self._headers()
        url = f"{self.base_url}/v1/transfers/verify/{reference}"
        try:
            resp = requests.get(url, headers=headers, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransientTransferError(
                f"Transfer verification failed: {type(e).__name__}",
                reference=reference,
            ) from e

        payload = _safe_json(resp)
        if not _is_success(resp.status_code) or not isinstance(payload, dict):
            raise TransferError(
                _error_message(payload, resp.status_code, default="Transfer verification failed"),
                reference=reference,
                details={"http_status": resp.status_code},
            )

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return TransferVerification(
            reference=reference,
            status=data.get("status"),
            chapa_reference=data.get("chapa_reference"),
            bank_reference=data.get("bank_reference"),
            response=payload,
        )

    def get_banks(self) -> Any:
        headers = self._headers()
        try:
            resp = requests.get(f"{self.base_url}/v1/banks", headers=headers, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransientTransferError(f"Bank list request failed: {type(e).__name__}") from e

        payload = _safe_json(resp)
        if not _is_success(resp.status_code):
            raise TransferError(
                _error_message(payload, resp.status_code, default="Failed to fetch banks"),
                details={"http_status": resp.status_code},
            )
        return payload


def _safe_json(resp) -> Optional[Any]:
    try:
        return resp.json()
    except ValueError:
        return None


def _error_message(payload: Any, http_status: int, *, default: Optional[str] = None) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return default or f"Transfer initiation failed (status {http_status})"


def _is_success(http_status: int) -> bool:
    return 200 <= http_status < 300

# deps/payouts.py
from app.payouts.service import PayoutService, build_payout_service
from app.providers.base import TransferClient
from app.providers.config import build_transfer_client


def get_payout_service() -> PayoutService:
    return build_payout_service()


def get_transfer_client() -> TransferClient:
    return build_transfer_client()

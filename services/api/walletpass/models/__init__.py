"""WalletPass database models."""

from walletpass.models.device import Device
from walletpass.models.registration import Registration
from walletpass.models.wallet_pass import WalletPass

__all__ = [
    "Device",
    "WalletPass",
    "Registration",
]

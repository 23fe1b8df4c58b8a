"""
Input validation helpers for wallet addresses and identifiers.
"""

import re
from typing import Optional

from minetoearn.core.exceptions import InvalidAddressError, ValidationError


EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
PLAYER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-:.]{1,64}$")


def is_valid_wallet_address(address: Optional[str]) -> bool:
    """Check a 0x-prefixed 20-byte hex address."""
    return bool(address) and bool(EVM_ADDRESS_PATTERN.match(address))


def validate_wallet_address(address: Optional[str]) -> str:
    if not is_valid_wallet_address(address):
        raise InvalidAddressError(address)
    return address


def validate_player_id(player_id: Optional[str]) -> str:
    if not player_id or not PLAYER_ID_PATTERN.match(player_id):
        raise ValidationError("Invalid player id", {"player_id": player_id})
    return player_id

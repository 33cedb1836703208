import re
import structlog

logger = structlog.get_logger()

# Solana address validation regex (base58, 32-44 chars)
WALLET_ADDRESS_PATTERN = re.compile(r'^[1-9A-HJ-NP-Za-km-z]{32,44}$')

# Strategy and alert identifiers
IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{1,128}$')


def verify_wallet_address(wallet_address: str) -> bool:
    """Verify if wallet address is valid Solana base58 format"""
    if not wallet_address:
        return False
    return bool(WALLET_ADDRESS_PATTERN.match(wallet_address))


def verify_identifier(identifier: str) -> bool:
    return bool(identifier) and bool(IDENTIFIER_PATTERN.match(identifier))


"""Builders for the common kinds of tracked transaction."""

from typing import Optional

from .models import TransactionInput, TransactionType


def shorten_address(address: str) -> str:
    """0x1234567890abcdef... -> 0x1234...cdef"""
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def create_transfer_transaction(
    hash: str,
    chain_id: int,
    to: str,
    from_address: str,
    value: int,
    token_symbol: Optional[str] = None,
) -> TransactionInput:
    return TransactionInput(
        hash=hash,
        chain_id=chain_id,
        type=TransactionType.TRANSFER,
        title=f"Transfer {token_symbol or 'Token'}",
        description=f"Transferring {token_symbol or 'tokens'} to {shorten_address(to)}",
        value=value,
        to=to,
        from_address=from_address,
    )


def create_approval_transaction(
    hash: str,
    chain_id: int,
    spender: str,
    from_address: str,
    value: int,
    token_symbol: Optional[str] = None,
) -> TransactionInput:
    return TransactionInput(
        hash=hash,
        chain_id=chain_id,
        type=TransactionType.APPROVAL,
        title=f"Approve {token_symbol or 'Token'}",
        description=f"Approving {token_symbol or 'tokens'} for {shorten_address(spender)}",
        value=value,
        to=spender,
        from_address=from_address,
    )


def create_disposal_transaction(
    hash: str,
    chain_id: int,
    token_address: str,
    from_address: str,
    value: int,
    token_symbol: Optional[str] = None,
) -> TransactionInput:
    return TransactionInput(
        hash=hash,
        chain_id=chain_id,
        type=TransactionType.DISPOSE,
        title=f"Dispose {token_symbol or 'Token'}",
        description=f"Disposing of {token_symbol or 'tokens'} via Token Toilet",
        value=value,
        to=token_address,
        from_address=from_address,
    )


def create_donation_transaction(
    hash: str,
    chain_id: int,
    recipient: str,
    from_address: str,
    value: int,
    token_symbol: Optional[str] = None,
    charity_name: Optional[str] = None,
) -> TransactionInput:
    """Donation to a charity address; the charity name lands in metadata when given."""
    target = charity_name or shorten_address(recipient)
    return TransactionInput(
        hash=hash,
        chain_id=chain_id,
        type=TransactionType.DONATE,
        title=f"Donate {token_symbol or 'Token'}",
        description=f"Donating {token_symbol or 'tokens'} to {target}",
        value=value,
        to=recipient,
        from_address=from_address,
        metadata={"charityName": charity_name} if charity_name else {},
    )

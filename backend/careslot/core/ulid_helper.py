"""ULID generation helper utilities."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def generate_payment_reference(booking_id: str) -> str:
    """Build the local correlation reference sent to the gateway as ``api_ref``."""
    return f"HC_{booking_id}_{generate_ulid()}"

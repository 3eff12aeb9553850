import secrets

_REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_booking_reference(prefix: str = "BK") -> str:
    """Human-readable booking reference such as BK-7QX-2MD-P4Z."""
    chars = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(9))
    return f"{prefix}-{chars[0:3]}-{chars[3:6]}-{chars[6:9]}"


def generate_cancellation_token() -> str:
    return secrets.token_urlsafe(32)

import hmac
from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC, matching what DateTime columns hand back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def short_code(code: str | None) -> str:
    if not code:
        return "null"
    return code[:20] + "..." if len(code) > 20 else code


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))

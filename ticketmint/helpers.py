import time
import random
import re
import string
from datetime import datetime, timezone
import hmac
from typing import Optional

from solders.pubkey import Pubkey


LAMPORTS_PER_SOL = 1_000_000_000


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def is_valid_address(address: Optional[str]) -> bool:
    if not address or not isinstance(address, str):
        return False
    try:
        Pubkey.from_string(address.strip())
    except ValueError:
        return False
    return True


def sol_to_lamports(sol: float) -> int:
    return int(round(float(sol) * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def usd_to_cents(usd: float) -> int:
    return int(round(float(usd) * 100))


def collection_symbol(event_name: str) -> str:
    # 4 chars from the name + 4 random, e.g. "TIGE7Q2K"
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", event_name).upper()
    suffix = "".join(
        random.choices(string.ascii_uppercase + string.digits, k=4)
    )
    return cleaned[:4] + suffix


def seat_label(number: int) -> str:
    return f"Ticket #{number}"

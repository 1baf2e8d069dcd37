import re
import uuid


ORDER_NUMBER_RE = re.compile(r"^[0-9A-Z]{32}$")


def next_order_number() -> str:
    """A random 128-bit token as 32 uppercase hex characters.

    Uniqueness is finally enforced by the ``orders.order_number`` unique
    constraint; the repository retries with a fresh number on collision.
    """
    return uuid.uuid4().hex.upper()


def is_order_number(value) -> bool:
    return isinstance(value, str) and bool(ORDER_NUMBER_RE.match(value))

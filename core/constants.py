"""Constants and small helpers shared across the redemption core.


- Order ids are ORD- plus a random URL-safe suffix; the id is the public lookup capability.
- Variant combinations are rendered "Size: S / Color: Red" in variation-declaration order.
"""

import secrets
import string

from django.conf import settings

ORDER_ID_PREFIX = "ORD-"
ORDER_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
ORDER_ID_LENGTH = getattr(settings, "ORDER_ID_LENGTH", 12)

SYSTEM_ACTOR = "system"
ORDER_RECEIVED_MESSAGE = "Order received"
BURN_SETTLED_MESSAGE = "Token burn confirmed on the ledger (transaction {transaction_id})"

COMBINATION_SEPARATOR = " / "
COMBINATION_NAME_SEPARATOR = ": "


def generate_order_id() -> str:
    """
    Return a fresh order id such as "ORD-V1StGXR8_Z5j"
    """
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(ORDER_ID_LENGTH))
    return f"{ORDER_ID_PREFIX}{suffix}"


def format_combination(pairs) -> str:
    """
    Render [(variation name, option), ...] as "Name: option / Name: option".
    """
    return COMBINATION_SEPARATOR.join(f"{name}{COMBINATION_NAME_SEPARATOR}{option}" for name, option in pairs)

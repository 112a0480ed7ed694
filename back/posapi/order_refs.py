"""
Order references.

Clients may act on an order before it has been saved, using a client-side
token such as ``temp-1718000000``. Routes parse the raw path value into an
``OrderRef`` once; the lifecycle functions then match on the variant instead
of sniffing string prefixes.
"""

from dataclasses import dataclass

from .settings import settings


@dataclass(frozen=True)
class PersistedOrderRef:
    id: int


@dataclass(frozen=True)
class PendingOrderRef:
    client_token: str


OrderRef = PersistedOrderRef | PendingOrderRef


def parse_order_ref(raw: str | int, temp_prefix: str | None = None) -> OrderRef:
    """
    Parse a path value into an OrderRef.
    Raises ValueError when the value is neither a pending token nor an integer id.
    """
    prefix = temp_prefix if temp_prefix is not None else settings.temp_order_prefix
    if isinstance(raw, int):
        return PersistedOrderRef(raw)

    value = raw.strip()
    if prefix and value.startswith(prefix):
        return PendingOrderRef(value)
    try:
        return PersistedOrderRef(int(value))
    except ValueError:
        raise ValueError(f"Invalid order id: {raw!r}") from None

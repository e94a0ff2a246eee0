"""Address heuristics and chat title templates."""

from __future__ import annotations

from ecosystem_queue.provisioning.models import Address


def derive_address(title: str) -> Address:
    """Split a free-form address into street and house.

    ``"Lenina, 10"`` and ``"10, Lenina"`` both give street ``Lenina`` and
    house ``10``; ``"Lenina 10"`` uses a trailing token that starts with a
    digit. Anything else is treated as a street without a house.
    """

    text = title.strip()
    if "," in text:
        parts = [part.strip() for part in text.split(",")]
        if len(parts) >= 2:  # noqa: PLR2004
            first, second = parts[0], parts[1]
            if first[:1].isdigit():
                return Address(street=second, house=first)
            return Address(street=first, house=second)
        return Address(street=text)

    tokens = text.split(" ")
    if len(tokens) > 1 and tokens[-1][:1].isdigit():
        return Address(street=" ".join(tokens[:-1]), house=tokens[-1])
    return Address(street=text)


def build_display_title(address: Address, district: str | None) -> str:
    suffix = f" | {district}" if district else ""
    if address.house:
        return f"🏠 Соседи д. {address.house} | {address.street}{suffix}"
    return f"🏠 Соседи | {address.street}{suffix}"


def build_about(address: Address, district: str | None) -> str:
    suffix = f", {district}" if district else ""
    if address.house:
        return f"Чат соседей дома {address.house} по улице {address.street}{suffix}"
    return f"Чат соседей: {address.street}{suffix}"

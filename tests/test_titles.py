from __future__ import annotations

import allure
import pytest

from ecosystem_queue.provisioning.models import Address
from ecosystem_queue.provisioning.titles import build_about, build_display_title, derive_address

pytestmark = [
    allure.epic("Ecosystem Provisioning"),
    allure.feature("Address Titles"),
]


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Lenina, 10", Address(street="Lenina", house="10")),
        ("10, Lenina", Address(street="Lenina", house="10")),
        ("ул. Мира 5к2", Address(street="ул. Мира", house="5к2")),
        ("Проспект Победы", Address(street="Проспект Победы")),
        ("  Lenina ,  10  ", Address(street="Lenina", house="10")),
    ],
)
def test_derive_address(title: str, expected: Address) -> None:
    assert derive_address(title) == expected


def test_titles_with_house_and_district() -> None:
    address = Address(street="Lenina", house="10")

    assert build_display_title(address, "Центральный") == "🏠 Соседи д. 10 | Lenina | Центральный"
    assert build_about(address, None) == "Чат соседей дома 10 по улице Lenina"


def test_titles_without_house() -> None:
    address = Address(street="Проспект Победы")

    assert build_display_title(address, None) == "🏠 Соседи | Проспект Победы"
    assert build_about(address, "Север") == "Чат соседей: Проспект Победы, Север"

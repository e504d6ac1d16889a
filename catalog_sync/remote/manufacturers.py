"""Manufacturer alias map: vendor spellings -> the name stored in the catalog."""

from __future__ import annotations

MANUFACTURER_ALIASES: dict[str, str] = {
    # NXP
    "nxp": "NXP",
    "nxp semiconductors": "NXP",
    "nxp semiconductors n.v.": "NXP",
    "nxp usa inc.": "NXP",
    # Microchip
    "microchip": "Microchip Technology",
    "microchip technology": "Microchip Technology",
    # ST
    "stm": "STMicroelectronics",
    "st microelectronics": "STMicroelectronics",
    "stmicroelectronics": "STMicroelectronics",
    # AMD / ADI
    "advanced micro devices": "AMD",
    "analog devices inc./maxim integrated": "Analog Devices Inc.",
    # Renesas
    "renesas": "Renesas Electronics Corporation",
}


def normalize_manufacturer_name(name: str | None) -> str:
    """
    Canonical manufacturer name, or the trimmed input when no alias is known.

    >>> normalize_manufacturer_name("NXP Semiconductors")
    'NXP'
    >>> normalize_manufacturer_name("  Vishay ")
    'Vishay'
    """
    if not name:
        return ""
    trimmed = str(name).strip()
    return MANUFACTURER_ALIASES.get(trimmed.lower(), trimmed)

"""MAC address utilities: canonical form, OUI manufacturer lookup, randomization check."""

import re

UNKNOWN_MANUFACTURER = "Unknown"

# OUI (first three octets) -> vendor
OUI_VENDORS = {
    "00:11:22": "CIMSYS Inc",
    "AA:BB:CC": "Virtual Vendor",
    "11:22:33": "Test Manufacturer",
    "00:1A:7D": "Sena Technologies",
    "00:0E:6D": "Apple, Inc.",
    "DC:2C:26": "Apple, Inc.",
    "5C:F3:70": "Broadcom",
    "00:25:00": "Apple, Inc.",
}

_HEX12 = re.compile(r"^[0-9A-F]{12}$")


def normalize_mac(mac_str: str) -> str:
    """Return the canonical uppercase, colon-separated form of a MAC address.

    Accepts "aa:bb:cc:dd:ee:ff", "AA-BB-CC-DD-EE-FF" and "aabbccddeeff".

    Raises:
        ValueError: not a 48-bit MAC address
    """
    if not isinstance(mac_str, str):
        raise ValueError(f"invalid MAC address: {mac_str!r}")
    digits = re.sub(r"[:\-.\s]", "", mac_str).upper()
    if not _HEX12.match(digits):
        raise ValueError(f"invalid MAC address: {mac_str!r}")
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def lookup_manufacturer(mac_str: str) -> str:
    """Vendor for the address prefix, "Unknown" when the OUI is not mapped."""
    return OUI_VENDORS.get(mac_str[:8].upper(), UNKNOWN_MANUFACTURER)


def is_locally_administered_mac(mac_str: str) -> bool:
    """Check if MAC address has locally-administered bit set (randomized).

    Bit 1 of the first octet: 0=universal, 1=locally administered.
    """
    try:
        first_octet = int(mac_str.split(":")[0], 16)
        return (first_octet & 0x02) != 0
    except ValueError:
        return False

"""Size shorthand used by php.ini and nginx (64M, 75m, 1g)."""

import re

SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kKmMgG]?)\s*$")
UNIT_FACTORS = {
    "": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
}


def parse_size(value) -> int:
    """
    解析大小字符串为字节数

    Both php.ini and nginx use 1024-based K/M/G suffixes and accept a bare
    number as bytes. ``0`` means "no limit" in both.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Size must not be negative: {value}")
        return value

    match = SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    return int(number) * UNIT_FACTORS[unit.lower()]


def format_size(num_bytes: int, style: str = "php") -> str:
    """
    字节数转为简写形式

    Picks the largest unit that divides evenly. php style uses upper case
    suffixes, nginx style lower case.
    """
    if num_bytes < 0:
        raise ValueError(f"Size must not be negative: {num_bytes}")

    suffix = ""
    value = num_bytes
    for unit in ("g", "m", "k"):
        factor = UNIT_FACTORS[unit]
        if num_bytes and num_bytes % factor == 0:
            suffix = unit
            value = num_bytes // factor
            break

    if style == "php":
        suffix = suffix.upper()
    return f"{value}{suffix}"


def is_unlimited(value) -> bool:
    return parse_size(value) == 0

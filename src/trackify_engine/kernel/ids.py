"""
ID generation using UUIDv7 (time-ordered UUIDs)

Budgets, workflows, comments, events and commands all get time-ordered ids,
so sorting by id also sorts by creation time.
"""

import secrets
import time


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    First 48 bits: Unix timestamp in milliseconds, then the version nibble,
    variant bits and 74 random bits.

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low = timestamp_48 & 0xFFFF
    version_and_rand = 0x7000 | rand_12
    variant_and_rand = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    return (
        f"{time_high:04x}{time_mid:04x}-"
        f"{time_low:04x}-"
        f"{version_and_rand:04x}-"
        f"{variant_and_rand:04x}-"
        f"{node:012x}"
    )

"""
Identifier generation

Event ids are UUIDv7-style: a 48-bit millisecond timestamp followed by
random bits, so ids sort in creation order. Commit ids share the format
and double as causation ids linking events back to their command.
"""

import secrets
import time
import uuid


def generate_id() -> str:
    """
    Generate a time-ordered UUID (version 7 layout)

    Returns:
        Canonical 36-character UUID string
    """
    timestamp_ms = int(time.time() * 1000) & 0xFFFFFFFFFFFF
    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)

    value = (timestamp_ms << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    return str(uuid.UUID(int=value))


def new_commit_id() -> str:
    """Generate a commit (causation) id for a command"""
    return generate_id()

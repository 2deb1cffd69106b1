"""
Debounce key encoding.

A debounce key identifies one ``(type, groupOn, channel)`` group and is used
verbatim as the TTL-store key, the flush message correlation key and the
aggregation query key::

    debounce:<type>:<channel>:<groupOn>

``groupOn`` goes last so that ids containing ``:`` survive a round trip.
"""
from typing import NamedTuple, Optional

from .models import Channel, NotificationType

KEY_PREFIX = "debounce"


class DebounceKey(NamedTuple):
    type: NotificationType
    group_on: str
    channel: Channel

    def encode(self) -> str:
        return f"{KEY_PREFIX}:{self.type.value}:{self.channel.value}:{self.group_on}"

    def __str__(self) -> str:
        return self.encode()


def decode_key(raw: str) -> Optional[DebounceKey]:
    """Returns None for keys that are not debounce keys."""
    if not raw:
        return None
    parts = raw.split(":", 3)
    if len(parts) != 4 or parts[0] != KEY_PREFIX or not parts[3]:
        return None
    try:
        return DebounceKey(NotificationType(parts[1]), parts[3], Channel(parts[2]))
    except ValueError:
        return None

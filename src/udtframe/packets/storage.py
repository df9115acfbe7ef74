# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from dataclasses import dataclass, field
from enum import Enum
from typing import Self

from .header import HEADER_SIZE

__all__ = 'Ownership', 'Borrowed', 'Owned', 'PacketStorage'  # noqa: RUF022


class Ownership(Enum):
    borrowed = 'borrowed'
    owned = 'owned'

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'


@dataclass(frozen=True, slots=True)
class Borrowed:
    """
    Header and payload views for a packet that does not own its payload.

    The payload aliases memory provided by the caller, who must keep it
    valid for as long as the packet is in use. The header either belongs
    to the packet or aliases the start of a received datagram.
    """

    header: memoryview
    payload: memoryview

    ownership = Ownership.borrowed

    @property
    def released(self) -> bool:
        return False

    def release(self) -> None:
        pass


@dataclass(slots=True)
class Owned:
    """Header and payload views over a single buffer that is held exclusively by a cloned packet"""

    buffer: bytearray
    header: memoryview = field(init=False)
    payload: memoryview = field(init=False)
    released: bool = field(init=False, default=False)

    ownership = Ownership.owned

    def __post_init__(self) -> None:
        if len(self.buffer) < HEADER_SIZE:
            raise ValueError(f'The buffer of an owned packet must hold at least {HEADER_SIZE} bytes')
        view = memoryview(self.buffer)
        self.header = view[:HEADER_SIZE]
        self.payload = view[HEADER_SIZE:]

    @classmethod
    def allocate(cls, payload_size: int) -> Self:
        return cls(bytearray(HEADER_SIZE + payload_size))

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.header.release()
        self.payload.release()


type PacketStorage = Borrowed | Owned

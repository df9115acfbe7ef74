# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Packet header layout.

   The header is made of five 32-bit words in network byte order:

      0                   1                   2                   3
      0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |0|                     Packet Sequence Number                  |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |B B|O|                Message Sequence Number                  |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |                  Time Stamp / Frame Deadline                  |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |                     Destination Socket ID                     |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |            Frame ID           |    Chunk ID   |  Total Chunks |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

   Control packets replace the first two words with:

     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |1|Type |     Extended Type     |           Reserved            |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
     |                     Additional Information                    |
     +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

   Every field is stored modulo 2 to the power of its width, so writing
   an out of range value silently wraps instead of failing. A field never
   touches the bits that lie outside its own range.
"""

import enum
import struct
from collections.abc import Callable
from typing import ClassVar, Protocol, Self, overload

from .exceptions import HeaderUsageError

__all__ = (  # noqa: RUF022
    'HEADER_WORDS',
    'HEADER_SIZE',

    'PacketFlag',
    'ControlType',
    'ExtendedType',
    'MessageBoundary',
    'Word2Usage',

    'HeaderField',
    'Word2Field',

    'read_word',
    'write_word',
)


HEADER_WORDS = 5
HEADER_SIZE = HEADER_WORDS * 4

_word: struct.Struct = struct.Struct('!I')
_word_mask = 0xFFFFFFFF


class PacketFlag(enum.IntEnum):
    data = 0
    control = 1


class ControlType(enum.IntEnum):
    handshake = 0
    keepalive = 1
    ack = 2
    nak = 3
    congestion_warning = 4
    shutdown = 5
    ack2 = 6
    extended = 7


class ExtendedType(enum.IntEnum):
    # Values not listed here are available for user defined control packets
    message_drop_request = 0x001
    peer_error = 0x002


class MessageBoundary(enum.IntEnum):
    middle = 0
    last = 1
    first = 2
    solo = 3


class Word2Usage(enum.Enum):
    timestamp = 'timestamp'
    frame_deadline = 'frame-deadline'

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'


class HeaderOwner(Protocol):
    @property
    def _header_(self) -> memoryview: ...

    @property
    def word2_usage(self) -> Word2Usage: ...


def read_word(header: memoryview, index: int) -> int:
    return _word.unpack_from(header, index * _word.size)[0]


def write_word(header: memoryview, index: int, value: int) -> None:
    _word.pack_into(header, index * _word.size, value & _word_mask)


class HeaderField[T: int]:
    """A view on a bit range of one header word"""

    _bits_: ClassVar[int] = _word.size * 8

    name: str | None
    word: int
    offset: int
    width: int
    mask: int

    def __init__(self, word: int, *, offset: int = 0, width: int = 32, kind: Callable[[int], T] = int) -> None:
        if not 0 <= word < HEADER_WORDS:
            raise ValueError(f'The header has no word with index {word}')
        if width <= 0 or offset < 0 or offset + width > self._bits_:
            raise ValueError(f'Invalid bit range for a {self._bits_}-bit word: offset={offset}, width={width}')
        self.name = None
        self.word = word
        self.offset = offset
        self.width = width
        self.mask = ((1 << width) - 1) << offset
        self.kind = kind

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.word}, offset={self.offset}, width={self.width})'

    def __set_name__(self, owner: type, name: str) -> None:
        if self.name is None:
            self.name = name
        elif name != self.name:
            raise TypeError(f'Cannot assign the same {self.__class__.__qualname__!r} to two different names: {self.name!r} and {name!r}')

    @overload
    def __get__(self, instance: None, owner: type) -> Self: ...

    @overload
    def __get__(self, instance: HeaderOwner, owner: type | None = None) -> T: ...

    def __get__(self, instance: HeaderOwner | None, owner: type | None = None) -> Self | T:
        if instance is None:
            return self
        return self.kind((read_word(instance._header_, self.word) & self.mask) >> self.offset)

    def __set__(self, instance: HeaderOwner, value: int) -> None:
        header = instance._header_
        word = read_word(header, self.word)
        write_word(header, self.word, (word & ~self.mask) | ((int(value) << self.offset) & self.mask))

    def __delete__(self, instance: HeaderOwner) -> None:
        raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be deleted')


class Word2Field(HeaderField[int]):
    """A view on header word 2 that is only available for one of its usages"""

    def __init__(self, usage: Word2Usage) -> None:
        super().__init__(2)
        self.usage = usage

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.usage!r})'

    def _check_usage(self, instance: HeaderOwner) -> None:
        if instance.word2_usage is not self.usage:
            raise HeaderUsageError(f'Header word 2 holds the {instance.word2_usage.value} for this packet, it cannot be accessed as {self.name!r}')

    def __get__(self, instance: HeaderOwner | None, owner: type | None = None) -> Self | int:  # type: ignore[override]
        if instance is None:
            return self
        self._check_usage(instance)
        return super().__get__(instance, owner)

    def __set__(self, instance: HeaderOwner, value: int) -> None:
        self._check_usage(instance)
        super().__set__(instance, value)

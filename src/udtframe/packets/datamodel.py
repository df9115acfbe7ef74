# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
import socket
from collections.abc import Buffer
from ipaddress import IPv4Address, IPv6Address
from typing import ClassVar, Protocol, Self, runtime_checkable

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'FixedWireProtocol',
    'FixedWireAdapter',

    # Adapters

    'IntegerAdapter',
    'Int32Adapter',
    'UInt32Adapter',

    'register_adapter',
    'default_adapter',

    # Types

    'Enum',
    'FixedBytes',

    'PeerAddress',
    'RequestType',
    'SocketType',
)


type WireData = bytes | bytearray | memoryview


# Protocols

@runtime_checkable
class FixedWireProtocol(Protocol):
    """The wire protocol for types that are always encoded using the same number of bytes"""

    @classmethod
    def wire_size(cls) -> int: ...

    @classmethod
    def from_wire(cls, data: WireData, /) -> Self: ...

    def to_wire(self) -> bytes: ...


class FixedWireAdapter[T](Protocol):
    """Wire adapter for record fields of type T, for types that do not implement FixedWireProtocol"""

    _abstract_: ClassVar[bool]
    size: ClassVar[int]

    @staticmethod
    def from_wire(data: WireData, /) -> T: ...

    @staticmethod
    def to_wire(value: T, /) -> bytes: ...

    @staticmethod
    def validate(value: object, /) -> T: ...


_default_adapters: dict[type, type[FixedWireAdapter]] = {}


def register_adapter[T](data_type: type[T], adapter: type[FixedWireAdapter[T]]) -> None:
    """Make adapter the one used for record fields of data_type when they do not specify one"""
    if issubclass(data_type, FixedWireProtocol):
        raise TypeError(f'{data_type.__qualname__!r} implements the wire protocol and cannot have a default adapter')
    _default_adapters[data_type] = adapter


def default_adapter[T](data_type: type[T]) -> type[FixedWireAdapter[T]] | None:
    return _default_adapters.get(data_type)


# Adapters

class IntegerAdapter:
    """Integers encoded in network byte order using a fixed number of bits"""

    _abstract_: ClassVar[bool] = True

    size: ClassVar[int]
    signed: ClassVar[bool]
    min_value: ClassVar[int]
    max_value: ClassVar[int]

    def __init_subclass__(cls, *, bits: int | None = None, signed: bool = True, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if bits is None:
            return
        if bits <= 0 or bits % 8:
            raise ValueError(f'The number of bits must be a positive multiple of 8, got {bits}')
        cls.size = bits // 8
        cls.signed = signed
        cls.min_value = -(1 << (bits - 1)) if signed else 0
        cls.max_value = (1 << (bits - 1)) - 1 if signed else (1 << bits) - 1
        cls._abstract_ = False

    @classmethod
    def description(cls) -> str:
        return f'{'signed' if cls.signed else 'unsigned'} {cls.size * 8}-bit integer'

    @classmethod
    def from_wire(cls, data: WireData, /) -> int:
        if len(data) != cls.size:
            raise ValueError(f'Expected {cls.size} bytes for {cls.description()} values, got {len(data)}')
        return int.from_bytes(data, byteorder='big', signed=cls.signed)

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls.size, byteorder='big', signed=cls.signed)

    @classmethod
    def validate(cls, value: object, /) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f'Expected an integer value, got {value.__class__.__qualname__!r}')
        if not cls.min_value <= value <= cls.max_value:
            raise ValueError(f'{value!r} is out of range for {cls.description()} values')
        return int(value)


class Int32Adapter(IntegerAdapter, bits=32):
    pass


class UInt32Adapter(IntegerAdapter, bits=32, signed=False):
    pass


register_adapter(int, Int32Adapter)


# Enumeration types

class Enum(enum.IntEnum):
    """An integer enumeration that is encoded on the wire using an integer adapter"""

    _adapter_: ClassVar[type[IntegerAdapter]]

    def __init_subclass__(cls, *, adapter: type[IntegerAdapter] = Int32Adapter, **kw: object) -> None:
        cls._adapter_ = adapter
        super().__init_subclass__(**kw)

    @classmethod
    def wire_size(cls) -> int:
        return cls._adapter_.size

    @classmethod
    def from_wire(cls, data: WireData, /) -> Self:
        return cls(cls._adapter_.from_wire(data))

    def to_wire(self) -> bytes:
        return self._adapter_.to_wire(self.value)


class SocketType(Enum, adapter=Int32Adapter):
    stream = 1
    dgram = 2


class RequestType(Enum, adapter=Int32Adapter):
    response_confirmation = -2
    response = -1
    rendezvous = 0
    regular = 1


# Byte strings

class FixedBytes(bytes):
    """A byte string of a fixed length (all zero by default)"""

    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, size: int = NotImplemented, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if size is not NotImplemented:
            cls._size_ = size

    def __new__(cls, data: Buffer | None = None, /) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'{cls.__qualname__!r} does not define its size and cannot be instantiated')
        instance = super().__new__(cls, bytes(cls._size_) if data is None else data)
        if len(instance) != cls._size_:
            raise ValueError(f'{cls.__qualname__!r} values must be exactly {cls._size_} bytes long, got {len(instance)}')
        return instance

    @classmethod
    def wire_size(cls) -> int:
        return cls._size_

    @classmethod
    def from_wire(cls, data: WireData, /) -> Self:
        return cls(data)

    def to_wire(self) -> bytes:
        return bytes(self)


class PeerAddress(FixedBytes, size=16):
    """
    The address the peer's UDP port is bound to, as four 32-bit words.

    An IPv4 address occupies the first word and leaves the other three
    zeroed, while an IPv6 address spans all four words.
    """

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.from_words({', '.join(f'0x{word:08x}' for word in self.words)})'

    @property
    def words(self) -> tuple[int, int, int, int]:
        return tuple(UInt32Adapter.from_wire(self[offset:offset + 4]) for offset in range(0, 16, 4))  # type: ignore[return-value]

    @classmethod
    def from_words(cls, *words: int) -> Self:
        if len(words) > 4:
            raise ValueError(f'{cls.__qualname__!r} holds at most 4 words, got {len(words)}')
        words = words + (0,) * (4 - len(words))
        return cls(b''.join(UInt32Adapter.to_wire(UInt32Adapter.validate(word)) for word in words))

    @classmethod
    def from_ip(cls, address: IPv4Address | IPv6Address | str) -> Self:
        match address:
            case str():
                return cls.from_ip(IPv6Address(address) if ':' in address else IPv4Address(address))
            case IPv4Address():
                return cls(address.packed + bytes(12))
            case IPv6Address():
                return cls(address.packed)

    def to_ip(self, family: int = socket.AF_INET) -> IPv4Address | IPv6Address:
        match family:
            case socket.AF_INET:
                return IPv4Address(self[:4])
            case socket.AF_INET6:
                return IPv6Address(bytes(self))
            case _:
                raise ValueError(f'Unsupported address family: {family!r}')

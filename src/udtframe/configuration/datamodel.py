# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
from typing import ClassVar, Protocol, runtime_checkable

__all__ = (  # noqa: RUF022
    'DataAdapter',

    'IntegerAdapter',
    'IntAdapter',
    'PositiveIntAdapter',

    'EnumNameAdapter',
    'EnumValueAdapter',
)


@runtime_checkable
class DataAdapter[T](Protocol):
    """Converts between a data type T and its text representation in XML"""

    @staticmethod
    def xml_parse(value: str, /) -> T: ...

    @staticmethod
    def xml_build(value: T, /) -> str: ...


class IntegerAdapter:
    """Integers limited to the [min_value, max_value] range"""

    name: ClassVar[str] = 'integer'
    min_value: ClassVar[int | None] = None
    max_value: ClassVar[int | None] = None

    def __init_subclass__(cls, *, name: str | None = None, bits: int | None = None, min_value: int | None = None, max_value: int | None = None, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if bits is not None:
            cls.min_value = -(1 << (bits - 1))
            cls.max_value = (1 << (bits - 1)) - 1
        if min_value is not None:
            cls.min_value = min_value if cls.min_value is None else max(cls.min_value, min_value)
        if max_value is not None:
            cls.max_value = max_value if cls.max_value is None else min(cls.max_value, max_value)
        if name is not None:
            cls.name = name

    @classmethod
    def _check(cls, number: int) -> int:
        if (cls.min_value is not None and number < cls.min_value) or (cls.max_value is not None and number > cls.max_value):
            raise ValueError(f"invalid value '{number}' for {cls.name}")
        return number

    @classmethod
    def xml_parse(cls, value: str) -> int:
        return cls._check(int(value))

    @classmethod
    def xml_build(cls, value: int) -> str:
        return str(cls._check(value))


class IntAdapter(IntegerAdapter, bits=32, name='signed 32-bit integer'):
    pass


class PositiveIntAdapter(IntAdapter, min_value=1, name='positive 32-bit integer'):
    pass


class EnumNameAdapter[E: enum.Enum]:
    """Enumeration members represented by their name"""

    _enum_: ClassVar[type[enum.Enum]]

    def __init_subclass__(cls, *, enum_type: type[enum.Enum], **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._enum_ = enum_type

    @classmethod
    def xml_parse(cls, value: str) -> E:
        try:
            return cls._enum_[value]  # type: ignore[return-value]
        except KeyError as exc:
            raise ValueError(f"invalid value '{value}' for {cls._enum_.__qualname__}") from exc

    @classmethod
    def xml_build(cls, value: E) -> str:
        if not isinstance(value, cls._enum_):
            raise TypeError(f'Expected a {cls._enum_.__qualname__!r} value, got {value.__class__.__qualname__!r}')
        return value.name


class EnumValueAdapter[E: enum.Enum]:
    """Enumeration members represented by their (string) value"""

    _enum_: ClassVar[type[enum.Enum]]

    def __init_subclass__(cls, *, enum_type: type[enum.Enum], **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._enum_ = enum_type

    @classmethod
    def xml_parse(cls, value: str) -> E:
        return cls._enum_(value)  # type: ignore[return-value]

    @classmethod
    def xml_build(cls, value: E) -> str:
        if not isinstance(value, cls._enum_):
            raise TypeError(f'Expected a {cls._enum_.__qualname__!r} value, got {value.__class__.__qualname__!r}')
        return str(value.value)

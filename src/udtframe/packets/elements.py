# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from enum import Enum
from inspect import Parameter, Signature
from typing import ClassVar, Self, cast, dataclass_transform, overload

from .datamodel import FixedWireAdapter, FixedWireProtocol, WireData, default_adapter

__all__ = 'Record', 'Field'


class _reprproxy:  # noqa: N801
    # Represent enumeration members and types by their qualified names, so that reprs can be evaluated back.

    def __init__(self, value: object) -> None:
        self.value = value

    def __repr__(self) -> str:
        match self.value:
            case Enum() as value:
                return f'{value.__class__.__qualname__}.{value.name}'
            case type() as value:
                return value.__qualname__
            case value:
                return repr(value)


def _protocol_adapter[T: FixedWireProtocol](kind: type[T]) -> type[FixedWireAdapter[T]]:
    # Types that implement the wire protocol get a stand-in adapter that delegates to them.
    # It also checks the value type (enumerations accept their integer values as well).

    class ProtocolAdapter:
        _abstract_: ClassVar[bool] = False
        size: ClassVar[int] = kind.wire_size()

        @staticmethod
        def from_wire(data: WireData, /) -> T:
            return kind.from_wire(data)

        @staticmethod
        def to_wire(value: T, /) -> bytes:
            return value.to_wire()

        @staticmethod
        def validate(value: object, /) -> T:
            if isinstance(value, kind):
                return value
            if issubclass(kind, Enum) and isinstance(value, int) and not isinstance(value, bool):
                return kind(value)
            raise TypeError(f'Expected a {kind.__qualname__!r} value, got {value.__class__.__qualname__!r}')

    ProtocolAdapter.__name__ = ProtocolAdapter.__qualname__ = f'{kind.__name__}Adapter'
    return cast(type[FixedWireAdapter[T]], ProtocolAdapter)


class Field[T]:
    """A record field that has a fixed size wire encoding"""

    name: str | None
    kind: type[T]
    default: T
    adapter: type[FixedWireAdapter[T]]
    size: int

    def __init__(self, kind: type[T], /, *, default: T = NotImplemented, adapter: type[FixedWireAdapter[T]] | None = None) -> None:
        if adapter is None:
            adapter = _protocol_adapter(kind) if issubclass(kind, FixedWireProtocol) else default_adapter(kind)  # type: ignore[arg-type]
        if adapter is None:
            raise TypeError(f'There is no wire adapter for {kind.__qualname__!r}, one must be provided')
        if adapter._abstract_:
            raise TypeError(f'Cannot use abstract adapter {adapter.__qualname__!r}')
        self.name = None
        self.kind = kind
        self.default = default
        self.adapter = adapter
        self.size = adapter.size

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({_reprproxy(self.kind)!r}, default={_reprproxy(self.default)!r}, adapter={_reprproxy(self.adapter)!r})'

    @property
    def parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        if self.default is NotImplemented:
            return Parameter(self.name, Parameter.KEYWORD_ONLY, annotation=self.kind)
        return Parameter(self.name, Parameter.KEYWORD_ONLY, default=self.default, annotation=self.kind)

    def __set_name__(self, owner: type['Record'], name: str) -> None:
        if self.name is not None and name != self.name:
            raise TypeError(f'The same {self.__class__.__qualname__!r} cannot be used for two different attributes: {self.name!r} and {name!r}')
        self.name = name

    @overload
    def __get__(self, instance: None, owner: type['Record']) -> Self: ...

    @overload
    def __get__(self, instance: 'Record', owner: type['Record'] | None = None) -> T: ...

    def __get__(self, instance: 'Record | None', owner: type['Record'] | None = None) -> Self | T:
        if instance is None:
            return self
        try:
            return instance.__dict__[self.name]
        except KeyError as exc:
            raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object is not set') from exc

    def __set__(self, instance: 'Record', value: T) -> None:
        if instance._frozen_:
            raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be modified once the record is frozen')
        instance.__dict__[self.name] = self.adapter.validate(value)

    def __delete__(self, instance: 'Record') -> None:
        raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be deleted')


@dataclass_transform(kw_only_default=True, field_specifiers=(Field,))
class Record:  # noqa: PLW1641
    """
    A fixed size record made of a sequence of fields.

    The fields are encoded on the wire back to back, in the order in which
    they are defined in the class body, with no type or length prefixes.
    As every field has a fixed size, so does the whole record.
    """

    __signature__: ClassVar[Signature] = Signature()

    _fields_: ClassVar[dict[str, Field]] = {}
    _size_: ClassVar[int] = 0

    _required_: ClassVar[frozenset[str]] = frozenset()
    _defaults_: ClassVar[dict[str, object]] = {}

    _frozen_: bool = False

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._fields_ = cls._fields_ | {name: value for name, value in cls.__dict__.items() if isinstance(value, Field)}
        cls._size_ = sum(field.size for field in cls._fields_.values())
        parameters = [field.parameter for field in cls._fields_.values()]
        cls.__signature__ = Signature(parameters)
        cls._required_ = frozenset(parameter.name for parameter in parameters if parameter.default is Parameter.empty)
        cls._defaults_ = {parameter.name: parameter.default for parameter in parameters if parameter.default is not Parameter.empty}

    def __init__(self, **kw: object) -> None:
        if unexpected := kw.keys() - self._fields_.keys():
            raise TypeError(f'Got an unexpected keyword argument {min(unexpected)!r}')
        if missing := self._required_ - kw.keys():
            raise TypeError(f'Missing a required keyword argument {min(missing)!r}')
        values = self._defaults_ | kw
        for name in self._fields_:
            setattr(self, name, values[name])

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({', '.join(f'{name}={_reprproxy(getattr(self, name))!r}' for name in self._fields_)})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return self.__class__ is other.__class__ and all(getattr(self, name) == getattr(other, name) for name in self._fields_)
        return NotImplemented

    @property
    def frozen(self) -> bool:
        return self._frozen_

    def freeze(self) -> None:
        """Make the record fields read-only (there is no way back, use replace to get a modifiable copy)"""
        self._frozen_ = True

    def replace(self, **changes: object) -> Self:
        """Return a new (modifiable) record with the same field values as this one, except for the given changes"""
        return self.__class__(**({name: getattr(self, name) for name in self._fields_} | changes))

    @classmethod
    def wire_size(cls) -> int:
        return cls._size_

    @classmethod
    def from_wire(cls, data: WireData) -> Self:
        """Decode a record from the start of data (any bytes past the record size are ignored)"""
        view = memoryview(data)
        if len(view) < cls._size_:
            raise ValueError(f'Insufficient data for {cls.__qualname__!r} ({len(view)} < {cls._size_} bytes)')
        values = {}
        offset = 0
        for name, field in cls._fields_.items():
            try:
                values[name] = field.adapter.from_wire(view[offset:offset + field.size])
            except ValueError as exc:
                raise ValueError(f'Failed to decode {cls.__qualname__}.{name}: {exc}') from exc
            offset += field.size
        instance = cls.__new__(cls)
        instance.__dict__.update(values)
        return instance

    def to_wire(self) -> bytes:
        return b''.join(field.adapter.to_wire(getattr(self, name)) for name, field in self._fields_.items())

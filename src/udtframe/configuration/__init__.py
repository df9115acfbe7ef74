# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Transport profiles.

A transport profile holds the settings that both ends of a connection
must agree on before exchanging packets: the handshake parameters that a
socket advertises and the way header word 2 is used (as a timestamp or as
a frame deadline). Profiles are described by XML documents like this:

  <transport-profile xmlns="urn:udtframe:params:xml:ns:transport-profile" name="vr">
    <version>4</version>
    <socket-type>dgram</socket-type>
    <max-segment-size>1500</max-segment-size>
    <flow-window-size>25600</flow-window-size>
    <header-word2>frame-deadline</header-word2>
    <cookie-lifetime>60</cookie-lifetime>
  </transport-profile>

All the elements are optional and they default to the values shown above.
"""

import logging
from collections.abc import Buffer
from dataclasses import dataclass, fields
from os import PathLike, fspath
from typing import ClassVar, Self

from lxml import etree

from udtframe.packets import UDT_VERSION, HandshakeRecord, Packet, SocketType, Word2Usage
from udtframe.packets.cookies import CookieGenerator

from .datamodel import DataAdapter, EnumNameAdapter, EnumValueAdapter, IntAdapter, PositiveIntAdapter
from .schema import ETreeElement, get_validator

__all__ = 'ConfigurationError', 'TransportProfile', 'ns_profile'


log = logging.getLogger(__name__)


ns_profile = 'urn:udtframe:params:xml:ns:transport-profile'


class ConfigurationError(ValueError):
    """Raised when a transport profile document is invalid."""


class SocketTypeAdapter(EnumNameAdapter[SocketType], enum_type=SocketType):
    pass


class Word2UsageAdapter(EnumValueAdapter[Word2Usage], enum_type=Word2Usage):
    pass


@dataclass(frozen=True, kw_only=True)
class TransportProfile:
    name: str | None = None
    version: int = UDT_VERSION
    socket_type: SocketType = SocketType.dgram
    max_segment_size: int = 1500
    flow_window_size: int = 25600
    header_word2: Word2Usage = Word2Usage.frame_deadline
    cookie_lifetime: int = 60

    # XML element name -> (attribute name, adapter)
    _elements_: ClassVar[dict[str, tuple[str, type[DataAdapter]]]] = {
        'version': ('version', IntAdapter),
        'socket-type': ('socket_type', SocketTypeAdapter),
        'max-segment-size': ('max_segment_size', PositiveIntAdapter),
        'flow-window-size': ('flow_window_size', PositiveIntAdapter),
        'header-word2': ('header_word2', Word2UsageAdapter),
        'cookie-lifetime': ('cookie_lifetime', PositiveIntAdapter),
    }

    _tag_: ClassVar[str] = f'{{{ns_profile}}}transport-profile'
    _schema_: ClassVar[str] = 'transport-profile.rng'

    def __post_init__(self) -> None:
        # Check the values the same way they are checked when they come from XML
        for element_name, (attribute, adapter) in self._elements_.items():
            try:
                adapter.xml_build(getattr(self, attribute))
            except (ValueError, AttributeError, TypeError) as exc:
                raise ConfigurationError(f'Invalid {element_name} setting: {getattr(self, attribute)!r}') from exc

    @classmethod
    def from_xml(cls, element: ETreeElement) -> Self:
        if element.tag != cls._tag_:
            raise ConfigurationError(f'The root element is not a transport profile: {element.tag!r} != {cls._tag_!r}')
        validator = get_validator(cls._schema_)
        if not validator.validate(element):
            raise ConfigurationError(f'Invalid transport profile: {validator.last_error}')
        settings: dict[str, object] = {'name': element.get('name')}
        for child in element.iterchildren(tag=etree.Element):
            element_name = etree.QName(child).localname
            attribute, adapter = cls._elements_[element_name]
            try:
                settings[attribute] = adapter.xml_parse((child.text or '').strip())
            except ValueError as exc:
                raise ConfigurationError(f'Invalid {element_name} setting: {exc}') from exc
        profile = cls(**settings)  # type: ignore[arg-type]
        log.debug('Loaded %r', profile)
        return profile

    @classmethod
    def from_string(cls, data: str | bytes) -> Self:
        parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
        try:
            element = etree.fromstring(data, parser)
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Malformed transport profile document: {exc}') from exc
        return cls.from_xml(element)

    @classmethod
    def from_file(cls, path: str | PathLike[str]) -> Self:
        parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
        try:
            document = etree.parse(fspath(path), parser)
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Malformed transport profile document {str(path)!r}: {exc}') from exc
        return cls.from_xml(document.getroot())

    def to_xml(self) -> ETreeElement:
        element = etree.Element(self._tag_, nsmap={None: ns_profile})
        if self.name is not None:
            element.set('name', self.name)
        for element_name, (attribute, adapter) in self._elements_.items():
            child = etree.SubElement(element, f'{{{ns_profile}}}{element_name}')
            child.text = adapter.xml_build(getattr(self, attribute))
        return element

    def to_string(self) -> str:
        return etree.tostring(self.to_xml(), encoding='unicode', pretty_print=True)

    def replace(self, **settings: object) -> Self:
        known = {field.name for field in fields(self)}
        if not known.issuperset(settings):
            raise TypeError(f'Got an unexpected setting {next(iter(set(settings) - known))!r}')
        return self.__class__(**{name: getattr(self, name) for name in known} | settings)  # type: ignore[arg-type]

    # Factories

    def new_packet(self) -> Packet:
        return Packet(usage=self.header_word2)

    def bind_packet(self, datagram: Buffer) -> Packet:
        return Packet.from_buffer(datagram, usage=self.header_word2)

    def new_handshake(self, **settings: object) -> HandshakeRecord:
        defaults = {
            'version': self.version,
            'socket_type': self.socket_type,
            'max_segment_size': self.max_segment_size,
            'flow_window_size': self.flow_window_size,
        }
        return HandshakeRecord(**defaults | settings)

    def cookie_generator(self, secret: bytes | None = None) -> CookieGenerator:
        return CookieGenerator(secret, lifetime=self.cookie_lifetime)

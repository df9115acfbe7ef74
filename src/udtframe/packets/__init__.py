# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Packets and handshake records.

   Every packet starts with a fixed size header (see the header module
   for its layout) which is followed by the payload. Data packets carry
   application data in the payload, while control packets carry control
   information that depends on the control type, or a 4 byte zero pad
   when the control type has no control information.

     +-------------------------+
     |      Packet Header      |  HEADER_SIZE bytes
     +-------------------------+
     |  Data / Control Info    |  length bytes
     +-------------------------+

   Packets never copy their payload. An outgoing packet references the
   buffer it was given and an incoming packet is bound directly over the
   received datagram. The only way to get a packet that owns its storage
   is to clone an existing packet.

   Handshake records are exchanged as the control information of
   handshake packets and have a fixed size of HANDSHAKE_CONTENT_SIZE
   bytes on the wire.
"""

import logging
import weakref
from collections.abc import Buffer
from operator import index
from typing import ClassVar, Self

from .datamodel import PeerAddress, RequestType, SocketType
from .elements import Field, Record
from .exceptions import HandshakeDecodeError, HandshakeEncodeError, PacketCloneError, PacketDecodeError, PacketError
from .header import HEADER_SIZE, ControlType, ExtendedType, HeaderField, MessageBoundary, PacketFlag, Word2Field, Word2Usage, write_word
from .storage import Borrowed, Owned, Ownership, PacketStorage

__all__ = (  # noqa: RUF022
    # Constants
    'HEADER_SIZE',
    'HANDSHAKE_CONTENT_SIZE',
    'UDT_VERSION',

    # Header enumerations
    'PacketFlag',
    'ControlType',
    'ExtendedType',
    'MessageBoundary',
    'Word2Usage',
    'Ownership',

    # Handshake enumerations and types
    'SocketType',
    'RequestType',
    'PeerAddress',

    # Packets and records
    'Packet',
    'HandshakeRecord',
)


log = logging.getLogger(__name__)


UDT_VERSION = 4
HANDSHAKE_CONTENT_SIZE = 48

_control_pad = memoryview(bytes(4))  # writev-style senders cannot send an empty control information segment
_empty = memoryview(b'')


def _byte_view(buffer: Buffer) -> memoryview:
    view = memoryview(buffer)
    if view.format == 'B' and view.ndim == 1:
        return view
    return view.cast('B')


def _payload_view(buffer: Buffer, size: int | None) -> tuple[memoryview, int]:
    view = _byte_view(buffer)
    if size is None:
        return view, len(view)
    if not 0 <= size <= len(view):
        raise ValueError(f'The payload size must be between 0 and {len(view)} bytes, got {size}')
    return view, size


def _control_info(rparam: Buffer | None, size: int | None) -> tuple[memoryview, int]:
    if rparam is None:
        if size:
            raise ValueError('A control information size was given without a control information buffer')
        return _empty, 0
    return _payload_view(rparam, size)


class Packet:
    """
    A packet made of a fixed size header and a payload.

    Header fields are views on the header words, so reading a field always
    returns what is currently stored in the header bytes and writing a
    field modifies only the bits that belong to it. Values that do not fit
    in a field are stored modulo 2 to the power of the field width.
    """

    header_size: ClassVar[int] = HEADER_SIZE

    # Word 0
    flag = HeaderField(0, offset=31, width=1, kind=PacketFlag)
    seq_no = HeaderField(0, offset=0, width=31)  # data packets
    type = HeaderField(0, offset=28, width=3, kind=ControlType)  # control packets
    extended_type = HeaderField(0, offset=16, width=12)  # control packets with ControlType.extended

    # Word 1
    msg_boundary = HeaderField(1, offset=30, width=2, kind=MessageBoundary)  # data packets
    msg_order_flag = HeaderField(1, offset=29, width=1, kind=bool)  # data packets
    msg_seq = HeaderField(1, offset=0, width=29)  # data packets
    additional_info = HeaderField(1)  # control packets

    # The ACK sequence number that an ACK-2 packet acknowledges occupies the whole of word 1
    ack_seq_no = HeaderField(1)

    # Word 2
    timestamp = Word2Field(Word2Usage.timestamp)
    frame_deadline = Word2Field(Word2Usage.frame_deadline)

    # Word 3
    destination_id = HeaderField(3)

    # Word 4
    frame_id = HeaderField(4, offset=16, width=16)
    chunk_id = HeaderField(4, offset=8, width=8)
    total_chunks = HeaderField(4, offset=0, width=8)

    _storage: PacketStorage
    _length: int
    _usage: Word2Usage
    _finalizer: weakref.finalize | None

    def __init__(self, *, usage: Word2Usage = Word2Usage.frame_deadline) -> None:
        self._storage = Borrowed(header=memoryview(bytearray(HEADER_SIZE)), payload=_empty)
        self._length = 0
        self._usage = usage
        self._finalizer = None

    def __repr__(self) -> str:
        if self._storage.released:
            return f'<{self.__class__.__qualname__}: released>'
        if self.flag is PacketFlag.control:
            description = f'control {self.type.name}'
            if self.type is ControlType.extended:
                description += f' (extended type 0x{self.extended_type:03x})'
        else:
            description = f'data seq_no={self.seq_no} msg_seq={self.msg_seq}'
        return f'<{self.__class__.__qualname__}: {description}, length={self._length}, {self.ownership.value}>'

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    @classmethod
    def _from_storage(cls, storage: PacketStorage, length: int, usage: Word2Usage) -> Self:
        instance = super().__new__(cls)
        instance._storage = storage
        instance._length = length
        instance._usage = usage
        instance._finalizer = None
        return instance

    @classmethod
    def from_buffer(cls, datagram: Buffer, *, usage: Word2Usage = Word2Usage.frame_deadline) -> Self:
        """Bind a packet over the bytes of a received datagram without copying them"""
        view = _byte_view(datagram)
        if len(view) < HEADER_SIZE:
            log.debug('Rejected a %d byte datagram that cannot hold a packet header', len(view))
            raise PacketDecodeError(f'The datagram is too short to contain a packet header ({len(view)} < {HEADER_SIZE} bytes)')
        return cls._from_storage(Borrowed(header=view[:HEADER_SIZE], payload=view[HEADER_SIZE:]), len(view) - HEADER_SIZE, usage)

    @property
    def _header_(self) -> memoryview:
        return self._storage.header

    @property
    def word2_usage(self) -> Word2Usage:
        return self._usage

    @property
    def ownership(self) -> Ownership:
        return self._storage.ownership

    @property
    def released(self) -> bool:
        return self._storage.released

    @property
    def capacity(self) -> int:
        """The number of bytes available to the payload"""
        return len(self._storage.payload)

    @property
    def length(self) -> int:
        """The payload length in bytes"""
        return self._length

    @length.setter
    def length(self, length: int) -> None:
        if not 0 <= length <= len(self._storage.payload):
            raise ValueError(f'The payload length must be between 0 and {len(self._storage.payload)} bytes, got {length}')
        self._length = length

    @property
    def payload(self) -> memoryview:
        return self._storage.payload[:self._length]

    def set_payload(self, buffer: Buffer, size: int | None = None) -> None:
        """
        Make the payload reference size bytes from the start of buffer.

        The buffer is not copied and it must remain valid until the packet
        was sent. When size is not specified the whole buffer is used. A
        writable buffer can also be used to receive a packet into, in which
        case the payload capacity is the size of the whole buffer.
        """
        if self._storage.ownership is Ownership.owned:
            raise PacketError('Cannot attach an external payload to a packet that owns its storage')
        self._attach(*_payload_view(buffer, size))

    def _attach(self, view: memoryview, length: int) -> None:
        self._storage = Borrowed(header=self._storage.header, payload=view)
        self._length = length

    def pack(self, control_type: ControlType, lparam: int | None = None, rparam: Buffer | None = None, size: int | None = None, *, extended_type: int = 0) -> None:
        """
        Make this a control packet of the given type.

        Depending on the control type, lparam is stored in the additional
        information word of the header and rparam (of which only the first
        size bytes are used) becomes the control information payload:

          handshake            rparam is the serialized handshake record
          keepalive            no control information
          ack                  lparam is the ACK sequence number, rparam is the ACK data
          nak                  rparam is the compressed loss list
          congestion_warning   no control information
          shutdown             no control information
          ack2                 lparam is the acknowledged ACK sequence number (required)
          extended             lparam and rparam are optional and interpreted according to
                               the extended type (message id and sequence range for message
                               drop requests, error code for peer errors)

        Packets without control information get a 4 byte zero pad as payload.

        The arguments are checked before anything is written, so a packet
        is left unchanged when they are rejected.
        """
        if self._storage.ownership is Ownership.owned:
            raise PacketError('Cannot pack a control packet into a packet that owns its storage')
        control_type = ControlType(control_type)
        if lparam is not None:
            lparam = index(lparam)
        extended_type = index(extended_type)

        match control_type:
            case ControlType.handshake | ControlType.nak | ControlType.ack:
                payload = _control_info(rparam, size)
            case ControlType.ack2 if lparam is None:
                raise ValueError('ACK-2 packets require the acknowledged ACK sequence number as lparam')
            case ControlType.extended if rparam is not None or size:
                payload = _control_info(rparam, size)
            case _:
                payload = _control_pad, len(_control_pad)

        write_word(self._header_, 0, 0)
        self.flag = PacketFlag.control
        self.type = control_type
        match control_type:
            case ControlType.ack | ControlType.ack2 if lparam is not None:
                self.ack_seq_no = lparam
            case ControlType.extended:
                self.extended_type = extended_type
                if lparam is not None:
                    self.additional_info = lparam
        self._attach(*payload)

    def get_packet_vector(self) -> tuple[memoryview, memoryview]:
        """Return the header and payload segments, suitable for socket.sendmsg and socket.recvmsg_into"""
        return self._storage.header, self._storage.payload[:self._length]

    def clone(self) -> Self:
        """Return a copy of this packet that owns its header and payload storage"""
        try:
            storage = Owned.allocate(self._length)
        except MemoryError as exc:
            raise PacketCloneError(f'Cannot allocate {HEADER_SIZE + self._length} bytes for a packet clone') from exc
        storage.header[:] = self._storage.header
        storage.payload[:] = self._storage.payload[:self._length]
        packet = self._from_storage(storage, self._length, self._usage)
        packet._finalizer = weakref.finalize(packet, storage.release)
        log.debug('Cloned %r', packet)
        return packet

    def release(self) -> None:
        """Release the storage of a packet that owns it (packets that borrow their storage are not affected)"""
        if self._finalizer is not None:
            self._finalizer()


class HandshakeRecord(Record):
    """
    The connection handshake information carried by handshake control packets.

    A record is frozen once it was serialized, as the serialized bytes are
    what the peer gets. Use replace to derive a record for a new attempt.
    """

    content_size: ClassVar[int] = HANDSHAKE_CONTENT_SIZE

    version: Field[int] = Field(int, default=UDT_VERSION)
    socket_type: Field[SocketType] = Field(SocketType, default=SocketType.dgram)
    initial_sequence_number: Field[int] = Field(int, default=0)
    max_segment_size: Field[int] = Field(int, default=1500)
    flow_window_size: Field[int] = Field(int, default=25600)
    request_type: Field[RequestType] = Field(RequestType, default=RequestType.regular)
    socket_id: Field[int] = Field(int, default=0)
    cookie: Field[int] = Field(int, default=0)
    peer_address: Field[PeerAddress] = Field(PeerAddress, default=PeerAddress())

    def serialize(self, buffer: bytearray | memoryview) -> int:
        """Write the record at the start of buffer and return the number of bytes written"""
        view = _byte_view(buffer)
        if view.readonly:
            raise TypeError('Cannot serialize a handshake record into a read-only buffer')
        if len(view) < self.content_size:
            raise HandshakeEncodeError(f'The buffer is too small for a handshake record ({len(view)} < {self.content_size} bytes)')
        data = self.to_wire()
        view[:len(data)] = data
        self.freeze()
        return len(data)

    def deserialize(self, buffer: Buffer, size: int | None = None) -> None:
        """
        Load the record fields from the first size bytes of buffer.

        Either all the fields are updated or, if the buffer does not hold
        a valid handshake record, none of them is.
        """
        if self._frozen_:
            raise AttributeError(f'Cannot load data into a frozen {self.__class__.__qualname__!r} object')
        view = _byte_view(buffer)
        size = len(view) if size is None else min(size, len(view))
        if size < self.content_size:
            raise HandshakeDecodeError(f'Insufficient data for a handshake record ({size} < {self.content_size} bytes)')
        try:
            record = self.from_wire(view[:self.content_size])
        except ValueError as exc:
            log.debug('Rejected handshake record: %s', exc)
            raise HandshakeDecodeError(f'Invalid handshake record: {exc}') from exc
        self.__dict__.update({name: getattr(record, name) for name in self._fields_})

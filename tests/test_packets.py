# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import gc
import socket
import struct

import pytest
from udtframe.packets import (
    HANDSHAKE_CONTENT_SIZE,
    HEADER_SIZE,
    ControlType,
    ExtendedType,
    HandshakeRecord,
    MessageBoundary,
    Ownership,
    Packet,
    PacketFlag,
    Word2Usage,
)
from udtframe.packets.exceptions import PacketCloneError, PacketDecodeError, PacketError
from udtframe.packets.storage import Owned


def word(packet: Packet, index: int) -> int:
    header, _ = packet.get_packet_vector()
    return struct.unpack_from('!I', header, index * 4)[0]


def data_packet(payload: bytes | bytearray) -> Packet:
    packet = Packet()
    packet.seq_no = 1000
    packet.msg_boundary = MessageBoundary.solo
    packet.msg_order_flag = True
    packet.msg_seq = 7
    packet.frame_deadline = 123456789
    packet.destination_id = 0xCAFE
    packet.frame_id = 321
    packet.chunk_id = 2
    packet.total_chunks = 3
    packet.set_payload(payload)
    return packet


class TestPack:

    @pytest.mark.parametrize('control_type', [ControlType.keepalive, ControlType.congestion_warning, ControlType.shutdown])
    def test_packets_without_control_information(self, control_type: ControlType) -> None:
        packet = Packet()
        packet.pack(control_type, lparam=99)
        assert packet.flag is PacketFlag.control
        assert packet.type is control_type
        assert packet.extended_type == 0
        assert packet.additional_info == 0
        assert packet.length == 4
        assert bytes(packet.payload) == bytes(4)

    def test_handshake(self) -> None:
        record = HandshakeRecord(socket_id=17)
        buffer = bytearray(HANDSHAKE_CONTENT_SIZE)
        size = record.serialize(buffer)
        packet = Packet()
        packet.pack(ControlType.handshake, rparam=buffer, size=size)
        assert packet.type is ControlType.handshake
        assert packet.length == HANDSHAKE_CONTENT_SIZE
        assert bytes(packet.payload) == record.to_wire()

    def test_ack(self) -> None:
        ack_data = bytearray(struct.pack('!4I', 5000, 100, 50, 8192))
        packet = Packet()
        packet.pack(ControlType.ack, lparam=42, rparam=ack_data)
        assert packet.type is ControlType.ack
        assert packet.ack_seq_no == 42
        assert word(packet, 1) == 42
        assert packet.length == 16
        memoryview(ack_data)[0:4] = struct.pack('!I', 5001)
        assert bytes(packet.payload[:4]) == struct.pack('!I', 5001)  # the control information is not copied

    def test_ack_without_data(self) -> None:
        packet = Packet()
        packet.pack(ControlType.ack, lparam=1)
        assert packet.length == 0
        assert packet.ack_seq_no == 1

    def test_nak(self) -> None:
        loss_list = bytearray(16)
        packet = Packet()
        packet.pack(ControlType.nak, rparam=loss_list, size=8)
        assert packet.type is ControlType.nak
        assert packet.length == 8
        assert packet.capacity == 16

    def test_ack2(self) -> None:
        packet = Packet()
        packet.pack(ControlType.ack2, lparam=0x12345678)
        assert packet.type is ControlType.ack2
        assert packet.ack_seq_no == 0x12345678
        assert packet.additional_info == 0x12345678
        assert bytes(packet.payload) == bytes(4)
        with pytest.raises(ValueError, match=r'ACK-2 packets require the acknowledged ACK sequence number'):
            Packet().pack(ControlType.ack2)

    def test_extended(self) -> None:
        packet = Packet()
        packet.pack(ControlType.extended, lparam=0x1234, rparam=struct.pack('!2I', 10, 20), extended_type=ExtendedType.message_drop_request)
        assert packet.type is ControlType.extended
        assert packet.extended_type == ExtendedType.message_drop_request
        assert packet.additional_info == 0x1234
        assert struct.unpack('!2I', packet.payload) == (10, 20)
        assert word(packet, 0) == 0xF0010000

        packet.pack(ControlType.extended, lparam=5, extended_type=ExtendedType.peer_error)
        assert packet.extended_type == ExtendedType.peer_error
        assert packet.additional_info == 5
        assert bytes(packet.payload) == bytes(4)

        packet.pack(ControlType.extended, extended_type=0x7FF)
        assert packet.extended_type == 0x7FF

    def test_pack_resets_word0(self) -> None:
        packet = data_packet(b'payload')
        packet.pack(ControlType.keepalive)
        assert word(packet, 0) == 0x90000000
        assert packet.destination_id == 0xCAFE
        assert packet.frame_deadline == 123456789
        assert (packet.frame_id, packet.chunk_id, packet.total_chunks) == (321, 2, 3)

    def test_extended_type_is_only_set_for_extended_packets(self) -> None:
        packet = Packet()
        packet.pack(ControlType.shutdown, extended_type=ExtendedType.peer_error)
        assert packet.extended_type == 0

    def test_invalid_arguments(self) -> None:
        packet = Packet()
        with pytest.raises(ValueError, match=r'The payload size must be between 0 and 4 bytes, got 5'):
            packet.pack(ControlType.nak, rparam=bytes(4), size=5)
        with pytest.raises(ValueError, match=r'A control information size was given without a control information buffer'):
            packet.pack(ControlType.handshake, size=48)
        with pytest.raises(ValueError):
            packet.pack(8)  # type: ignore[arg-type]
        with pytest.raises(ValueError, match=r'A control information size was given without a control information buffer'):
            packet.pack(ControlType.extended, size=8, extended_type=ExtendedType.peer_error)
        with pytest.raises(TypeError):
            packet.pack(ControlType.ack, lparam='42')  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        ('control_type', 'arguments'),
        [
            (ControlType.nak, {'rparam': bytes(4), 'size': 5}),
            (ControlType.handshake, {'size': 48}),
            (ControlType.ack, {'lparam': 42, 'rparam': bytes(16), 'size': 17}),
            (ControlType.ack, {'lparam': 42, 'size': 16}),
            (ControlType.ack2, {}),
            (ControlType.extended, {'lparam': 5, 'size': 4, 'extended_type': ExtendedType.peer_error}),
        ],
    )
    def test_rejected_arguments_leave_packet_unchanged(self, control_type: ControlType, arguments: dict[str, object]) -> None:
        packet = data_packet(b'payload')
        header = bytes(packet.get_packet_vector()[0])
        additional_info = packet.additional_info
        with pytest.raises(ValueError):
            packet.pack(control_type, **arguments)  # type: ignore[arg-type]
        assert bytes(packet.get_packet_vector()[0]) == header
        assert packet.flag is PacketFlag.data
        assert packet.seq_no == 1000
        assert packet.additional_info == additional_info
        assert packet.msg_seq == 7
        assert bytes(packet.payload) == b'payload'
        assert packet.length == 7


class TestPayload:

    def test_set_payload(self) -> None:
        data = bytearray(b'hello world')
        packet = Packet()
        packet.set_payload(data)
        assert packet.length == 11
        assert packet.capacity == 11
        assert packet.ownership is Ownership.borrowed
        memoryview(data)[0:5] = b'HELLO'
        assert bytes(packet.payload) == b'HELLO world'

        packet.set_payload(data, 5)
        assert bytes(packet.payload) == b'HELLO'
        assert packet.capacity == 11

    def test_length(self) -> None:
        packet = Packet()
        packet.set_payload(b'0123456789', 4)
        packet.length = 10
        assert bytes(packet.payload) == b'0123456789'
        packet.length = 0
        assert bytes(packet.payload) == b''
        with pytest.raises(ValueError, match=r'The payload length must be between 0 and 10 bytes, got 11'):
            packet.length = 11
        with pytest.raises(ValueError):
            packet.length = -1
        assert packet.length == 0

    def test_payload_formats(self) -> None:
        packet = Packet()
        packet.set_payload(memoryview(struct.pack('!2I', 1, 2)).cast('I'))
        assert packet.length == 8


class TestPacketVector:

    def test_vector(self) -> None:
        packet = data_packet(b'abc')
        header, payload = packet.get_packet_vector()
        assert isinstance(header, memoryview)
        assert isinstance(payload, memoryview)
        assert len(header) == HEADER_SIZE
        assert bytes(payload) == b'abc'

        packet.length = 1
        _, payload = packet.get_packet_vector()
        assert bytes(payload) == b'a'

    def test_bind_over_datagram(self) -> None:
        datagram = bytearray(HEADER_SIZE + 6)
        datagram[HEADER_SIZE:] = b'abcdef'
        packet = Packet.from_buffer(datagram)
        assert packet.ownership is Ownership.borrowed
        assert packet.length == 6
        assert bytes(packet.payload) == b'abcdef'

        packet.frame_id = 0xBEEF
        assert datagram[16:18] == b'\xbe\xef'  # the header is a view on the datagram

    def test_bind_over_short_datagram(self) -> None:
        with pytest.raises(PacketDecodeError, match=r'The datagram is too short to contain a packet header \(19 < 20 bytes\)'):
            Packet.from_buffer(bytes(19))
        with pytest.raises(ValueError):
            Packet.from_buffer(b'')
        assert Packet.from_buffer(bytes(HEADER_SIZE)).length == 0

    @pytest.mark.skipif(not hasattr(socket, 'AF_UNIX'), reason='requires unix domain sockets')
    def test_socket_round_trip(self) -> None:
        sender, receiver = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
        with sender, receiver:
            outgoing = data_packet(b'frame chunk data')
            assert sender.sendmsg(outgoing.get_packet_vector()) == HEADER_SIZE + 16

            incoming = Packet()
            incoming.set_payload(bytearray(1500))
            nbytes, *_ = receiver.recvmsg_into(incoming.get_packet_vector())
            incoming.length = nbytes - HEADER_SIZE

            assert incoming.length == 16
            assert bytes(incoming.payload) == b'frame chunk data'
            assert incoming.seq_no == 1000
            assert incoming.msg_boundary is MessageBoundary.solo
            assert incoming.msg_order_flag is True
            assert incoming.msg_seq == 7
            assert incoming.frame_deadline == 123456789
            assert incoming.destination_id == 0xCAFE
            assert (incoming.frame_id, incoming.chunk_id, incoming.total_chunks) == (321, 2, 3)

            control = Packet()
            control.pack(ControlType.ack2, lparam=77)
            sender.sendmsg(control.get_packet_vector())
            received = Packet.from_buffer(receiver.recv(1500))
            assert received.flag is PacketFlag.control
            assert received.type is ControlType.ack2
            assert received.ack_seq_no == 77
            assert received.length == 4


class TestClone:

    def test_clone_is_identical(self) -> None:
        packet = data_packet(bytearray(b'abcdef'))
        packet.length = 4
        clone = packet.clone()
        assert clone.ownership is Ownership.owned
        assert clone.word2_usage is packet.word2_usage
        assert [bytes(segment) for segment in clone.get_packet_vector()] == [bytes(segment) for segment in packet.get_packet_vector()]
        assert clone.length == clone.capacity == 4

    def test_clone_is_independent(self) -> None:
        data = bytearray(b'abcdef')
        packet = data_packet(data)
        clone = packet.clone()

        memoryview(data)[:] = b'zzzzzz'
        packet.frame_id = 1
        packet.msg_seq = 1
        assert bytes(clone.payload) == b'abcdef'
        assert clone.frame_id == 321
        assert clone.msg_seq == 7

        clone.payload[0] = ord('A')
        clone.chunk_id = 0
        assert data == b'zzzzzz'
        assert packet.chunk_id == 2

    def test_clone_keeps_word2_usage(self) -> None:
        packet = Packet(usage=Word2Usage.timestamp)
        packet.timestamp = 1000
        clone = packet.clone()
        assert clone.word2_usage is Word2Usage.timestamp
        assert clone.timestamp == 1000

    def test_clone_of_clone(self) -> None:
        clone = data_packet(b'xyz').clone()
        second = clone.clone()
        clone.release()
        assert second.ownership is Ownership.owned
        assert bytes(second.payload) == b'xyz'
        assert second.frame_id == 321

    def test_owned_packets_keep_their_storage(self) -> None:
        clone = data_packet(b'xyz').clone()
        with pytest.raises(PacketError, match=r'Cannot attach an external payload to a packet that owns its storage'):
            clone.set_payload(b'other')
        with pytest.raises(PacketError, match=r'Cannot pack a control packet into a packet that owns its storage'):
            clone.pack(ControlType.ack2, lparam=1)
        assert clone.flag is PacketFlag.data
        assert clone.seq_no == 1000
        assert bytes(clone.payload) == b'xyz'

    def test_release(self) -> None:
        clone = data_packet(b'xyz').clone()
        header, payload = clone.get_packet_vector()
        assert not clone.released
        clone.release()
        assert clone.released
        clone.release()
        assert clone.released
        with pytest.raises(ValueError):
            len(header)
        assert repr(clone) == '<Packet: released>'

    def test_release_with_context_manager(self) -> None:
        with data_packet(b'xyz').clone() as clone:
            assert bytes(clone.payload) == b'xyz'
        assert clone.released

    def test_release_on_collection(self) -> None:
        clone = data_packet(b'xyz').clone()
        header, _ = clone.get_packet_vector()
        del clone
        gc.collect()
        with pytest.raises(ValueError):
            header.tobytes()

    def test_borrowed_packets_are_not_released(self) -> None:
        data = bytearray(b'xyz')
        packet = data_packet(data)
        packet.release()
        assert not packet.released
        assert bytes(packet.payload) == b'xyz'

    def test_allocation_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def allocate(cls: type[Owned], payload_size: int) -> Owned:
            raise MemoryError

        monkeypatch.setattr(Owned, 'allocate', classmethod(allocate))
        packet = data_packet(b'xyz')
        with pytest.raises(PacketCloneError, match=r'Cannot allocate 23 bytes for a packet clone') as exc_info:
            packet.clone()
        assert isinstance(exc_info.value, MemoryError)
        assert isinstance(exc_info.value.__cause__, MemoryError)


class TestRepr:

    def test_repr(self) -> None:
        assert repr(data_packet(b'abc')) == '<Packet: data seq_no=1000 msg_seq=7, length=3, borrowed>'
        packet = Packet()
        packet.pack(ControlType.extended, extended_type=ExtendedType.peer_error)
        assert repr(packet) == '<Packet: control extended (extended type 0x002), length=4, borrowed>'
        assert repr(packet.clone()) == '<Packet: control extended (extended type 0x002), length=4, owned>'

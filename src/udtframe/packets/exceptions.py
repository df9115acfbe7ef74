# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = (  # noqa: RUF022
    'PacketError',
    'PacketDecodeError',
    'PacketCloneError',
    'HeaderUsageError',
    'HandshakeEncodeError',
    'HandshakeDecodeError',
)


class PacketError(Exception):
    """Base class for the errors raised by the packet layer."""


class PacketDecodeError(PacketError, ValueError):
    """Raised when received bytes cannot hold a packet header."""


class PacketCloneError(PacketError, MemoryError):
    """Raised when the storage for a cloned packet cannot be allocated."""


class HeaderUsageError(PacketError, AttributeError):
    """Raised when header word 2 is accessed in a way that conflicts with the packet's word 2 usage."""


class HandshakeEncodeError(PacketError, ValueError):
    """Raised when a handshake record does not fit in the output buffer."""


class HandshakeDecodeError(PacketError, ValueError):
    """Raised when a handshake record cannot be decoded from a buffer."""

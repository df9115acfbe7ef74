# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import time
from secrets import token_bytes as secure_random_bytes

from cryptography.hazmat.primitives import hashes, hmac

__all__ = 'CookieGenerator',  # noqa: COM818


class CookieGenerator:
    """
    Generate and verify the anti-spoofing cookies used in handshakes.

    A listening socket answers the first handshake from a peer with a
    cookie derived from the peer address and the current time period.
    The peer has to echo the cookie back before a connection is set up,
    which proves that it can receive packets at the address it claims.
    Cookies from the current and the previous time period are accepted.
    """

    def __init__(self, secret: bytes | None = None, *, lifetime: int = 60) -> None:
        if lifetime <= 0:
            raise ValueError(f'The cookie lifetime must be a positive number of seconds, got {lifetime}')
        self.secret = secret if secret is not None else secure_random_bytes(32)
        self.lifetime = lifetime

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(lifetime={self.lifetime!r})'

    def _cookie(self, host: str, port: int, period: int) -> int:
        mac = hmac.HMAC(self.secret, hashes.SHA256())
        mac.update(f'{host}:{port}:{period}'.encode())
        return int.from_bytes(mac.finalize()[:4], byteorder='big', signed=True)

    def _period(self, timestamp: float | None) -> int:
        return int((time.time() if timestamp is None else timestamp) // self.lifetime)

    def generate(self, host: str, port: int, *, timestamp: float | None = None) -> int:
        """Return the signed 32-bit cookie for the peer address at the given time (defaults to now)"""
        return self._cookie(host, port, self._period(timestamp))

    def verify(self, cookie: int, host: str, port: int, *, timestamp: float | None = None) -> bool:
        period = self._period(timestamp)
        return cookie in {self._cookie(host, port, period), self._cookie(host, port, period - 1)}

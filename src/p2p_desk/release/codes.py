"""Verification-code providers for the release call's second factor."""

from __future__ import annotations

import asyncio
import binascii
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import pyotp
import structlog

from p2p_desk.config.schema import TotpConfig
from p2p_desk.models import AuthType

log = structlog.get_logger("codes")


class CodeUnavailableError(Exception):
    """No verification code can be produced right now."""


class VerificationCodeProvider(ABC):
    auth_type: AuthType

    @abstractmethod
    async def get_code(self, order_number: str) -> str:
        """Return a fresh code for releasing *order_number*."""
        ...


class TotpCodeProvider(VerificationCodeProvider):
    """Authenticator-app codes (RFC 6238).

    The marketplace rejects a code that was already used, so two releases
    inside one time window wait for the next window instead.
    """

    auth_type = AuthType.GOOGLE

    def __init__(
        self,
        secret: str,
        digits: int = 6,
        period_s: int = 30,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not secret:
            raise CodeUnavailableError("TOTP secret not configured")
        self._totp = pyotp.TOTP(secret.replace(" ", "").upper(), digits=digits, interval=period_s)
        self.period_s = period_s
        self._clock = clock
        self._sleep = sleep
        self._last_window: int | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: TotpConfig) -> TotpCodeProvider | None:
        if not config.secret:
            return None
        return cls(config.secret, digits=config.digits, period_s=config.period_s)

    def seconds_remaining(self) -> float:
        return self.period_s - (self._clock() % self.period_s)

    async def get_code(self, order_number: str) -> str:
        async with self._lock:
            window = int(self._clock() // self.period_s)
            if self._last_window is not None and window <= self._last_window:
                wait_s = (self._last_window + 1) * self.period_s - self._clock()
                log.info("totp_waiting_next_window", order_number=order_number, wait_s=round(max(wait_s, 0), 2))
                if wait_s > 0:
                    await self._sleep(wait_s)
                window = max(int(self._clock() // self.period_s), self._last_window + 1)

            try:
                code = self._totp.at(window * self.period_s)
            except (binascii.Error, ValueError) as e:
                raise CodeUnavailableError(f"invalid TOTP secret: {e}") from e
            self._last_window = window
            return code

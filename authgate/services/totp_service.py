"""Time-based one-time password secrets and verification."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pyotp
from pyotp.utils import strings_equal

from ..domain.clock import utcnow

# 32 base32 characters encode 160 bits (20 bytes) of entropy.
SECRET_LENGTH = 32


@dataclass(slots=True)
class TotpSecret:
    secret: str
    provisioning_uri: str


class TotpService:
    """Generates TOTP secrets and checks codes with a drift tolerance window."""

    def __init__(self, issuer: str, *, tolerance_steps: int = 1, interval: int = 30) -> None:
        self.issuer = issuer
        self.tolerance_steps = tolerance_steps
        self.interval = interval

    def generate_secret(self, label: str) -> TotpSecret:
        secret = pyotp.random_base32(length=SECRET_LENGTH)
        uri = pyotp.TOTP(secret, interval=self.interval).provisioning_uri(
            name=label, issuer_name=self.issuer
        )
        return TotpSecret(secret=secret, provisioning_uri=uri)

    def current_code(self, secret: str, for_time: Optional[datetime] = None) -> str:
        return pyotp.TOTP(secret, interval=self.interval).at(for_time or utcnow())

    def match_step(
        self,
        secret: str,
        code: str,
        *,
        tolerance_steps: Optional[int] = None,
        for_time: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Find the time step a code belongs to.

        Args:
            secret: Base32 TOTP secret
            code: Code typed by the user
            tolerance_steps: Steps of clock drift accepted either side of now
            for_time: Reference time, defaults to now

        Returns:
            The matching step counter, or None if the code is wrong
        """
        code = (code or "").strip()
        if not code.isdigit():
            return None
        window = self.tolerance_steps if tolerance_steps is None else tolerance_steps
        totp = pyotp.TOTP(secret, interval=self.interval)
        current = totp.timecode(for_time or utcnow())
        for step in range(current - window, current + window + 1):
            if strings_equal(totp.generate_otp(step), code):
                return step
        return None

    def verify_code(
        self,
        secret: str,
        code: str,
        tolerance_steps: Optional[int] = None,
        for_time: Optional[datetime] = None,
    ) -> bool:
        return (
            self.match_step(secret, code, tolerance_steps=tolerance_steps, for_time=for_time)
            is not None
        )

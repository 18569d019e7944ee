"""
OTP Generator & Verifier.

Codes are short-lived shared secrets proving physical custody transfer at
pickup and delivery. Expiry is data checked lazily at verification time,
never a scheduled timer.
"""

import hmac
import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.fsm.clock import as_utc
from app.fsm.errors import OtpExpiredError, OtpMismatchError, OtpNotGeneratedError
from app.fsm.states import OtpStage

OTP_MIN = 100000
OTP_MAX = 999999
DEFAULT_OTP_TTL_SECONDS = 300

_system_random = random.SystemRandom()


class OtpState(BaseModel):
    """One stage's passcode as stored on the donation."""

    model_config = ConfigDict(frozen=True)

    code: Optional[str] = None
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    verified: bool = False

    @classmethod
    def empty(cls) -> "OtpState":
        return cls()

    @property
    def is_generated(self) -> bool:
        return bool(self.code)

    def is_expired(self, now: datetime) -> bool:
        """Accepted while now <= expires_at."""
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and as_utc(now) > expires_at


def generate_code() -> str:
    """6-digit numeric code in 100000-999999."""
    return str(_system_random.randint(OTP_MIN, OTP_MAX))


def new_otp(now: datetime, ttl_seconds: int = DEFAULT_OTP_TTL_SECONDS) -> OtpState:
    """Fresh unverified code valid for ttl_seconds from now."""
    now = as_utc(now)
    return OtpState(
        code=generate_code(),
        generated_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
        verified=False,
    )


def verify_otp(state: OtpState, stage: OtpStage, submitted: Optional[str], now: datetime) -> None:
    """
    Check a submitted code against the stored state.

    Raises OtpNotGeneratedError, OtpMismatchError or OtpExpiredError, in that
    order. Returns None on success; the caller applies the verified flag and
    the status advance in one write.
    """
    if not state.is_generated:
        raise OtpNotGeneratedError(
            f"{stage.display_name} OTP not generated yet. "
            f"Please ask the {'donor' if stage == OtpStage.PICKUP else 'recipient'} "
            "to check email/dashboard."
        )

    candidate = (submitted or "").strip()
    if not hmac.compare_digest(state.code.encode(), candidate.encode()):
        raise OtpMismatchError(
            f"Invalid {'Donor' if stage == OtpStage.PICKUP else 'Recipient'} OTP"
        )

    if state.is_expired(now):
        raise OtpExpiredError("OTP has expired. Please regenerate.")

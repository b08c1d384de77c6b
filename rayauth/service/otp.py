from __future__ import annotations

import hmac
import math
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from rayauth.config import Settings
from rayauth.logging import get_logger
from rayauth.service.errors import BadRequestError
from rayauth.service.tokens import hash_token
from rayauth.storage.redis_cache import RedisCache

OTP_TTL_SECONDS = 300
OTP_RESEND_COOLDOWN_SECONDS = 60
OTP_MAX_ATTEMPTS = 3

logger = get_logger(__name__)


def normalize_contact(contact: str) -> str:
    return contact.strip().lower()


def mask_contact(contact: str) -> str:
    """``jo***@example.com`` for emails, ``+225****89`` for phone numbers."""
    if "@" in contact:
        local, domain = contact.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"{contact[:4]}****{contact[-2:]}"


class LocalOtpCodes:
    """In-process twin of the cache's OTP operations, for tests and the dev fallback."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # contact -> (entry, unix time it disappears)
        self._entries: Dict[str, tuple[dict, float]] = {}

    def _live(self, contact: str) -> Optional[dict]:
        held = self._entries.get(contact)
        if held is None:
            return None
        if held[1] <= self._clock():
            del self._entries[contact]
            return None
        return held[0]

    async def put_otp(self, contact: str, code_hash: str, issued_at: float, ttl_seconds: int) -> None:
        entry = {"code_hash": code_hash, "issued_at": issued_at, "attempts": 0}
        with self._lock:
            self._entries[contact] = (entry, self._clock() + ttl_seconds)

    async def get_otp(self, contact: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(contact)
            return dict(entry) if entry else None

    async def record_otp_attempt(self, contact: str) -> int:
        with self._lock:
            entry = self._live(contact)
            if entry is None:
                return -1
            entry["attempts"] += 1
            return entry["attempts"]

    async def drop_otp(self, contact: str) -> bool:
        with self._lock:
            entry = self._live(contact)
            self._entries.pop(contact, None)
            return entry is not None


class OtpService:
    """Six-digit one-time codes keyed by an email address or phone number.

    Codes are kept hashed in Redis with a TTL. Each verification spends one
    of three attempts before the code is compared, so concurrent guesses
    cannot exceed the limit. Delivering the code is left to the caller;
    outside production the code is logged and echoed back instead.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.codes = cache if cache is not None else LocalOtpCodes(clock)

    async def send_otp(self, contact: str) -> dict:
        key = normalize_contact(contact)
        now = self.clock()
        pending = await self.codes.get_otp(key)
        if pending is not None:
            elapsed = now - pending["issued_at"]
            if elapsed < OTP_RESEND_COOLDOWN_SECONDS:
                wait = max(1, math.ceil(OTP_RESEND_COOLDOWN_SECONDS - elapsed))
                return {
                    "success": False,
                    "message": f"Please wait {wait} seconds before requesting a new code.",
                    "retry_after": wait,
                }

        code = str(100000 + secrets.randbelow(900000))
        await self.codes.put_otp(key, hash_token(code), now, OTP_TTL_SECONDS)

        result = {
            "success": True,
            "message": "Verification code sent.",
            "contact": mask_contact(key),
            "expires_in": OTP_TTL_SECONDS,
        }
        if self.settings.is_production:
            logger.info("otp_issued", contact=key)
        else:
            logger.info("otp_issued_dev", contact=key, otp=code)
            result["code"] = code
        return result

    async def verify_otp(self, contact: str, code: str) -> dict:
        key = normalize_contact(contact)
        entry = await self.codes.get_otp(key)
        if entry is None:
            raise BadRequestError("No code pending for this contact. Request a new one.")
        if self.clock() - entry["issued_at"] > OTP_TTL_SECONDS:
            await self.codes.drop_otp(key)
            raise BadRequestError("Code expired. Request a new one.")

        attempts = await self.codes.record_otp_attempt(key)
        if attempts < 0:
            raise BadRequestError("Code expired. Request a new one.")
        if attempts > OTP_MAX_ATTEMPTS:
            await self.codes.drop_otp(key)
            raise BadRequestError("Too many attempts. Request a new code.")

        if not hmac.compare_digest(entry["code_hash"], hash_token(code)):
            left = OTP_MAX_ATTEMPTS - attempts
            if left == 0:
                await self.codes.drop_otp(key)
                logger.warning("otp_attempts_exhausted", contact=key)
                raise BadRequestError("Too many attempts. Request a new code.")
            raise BadRequestError(
                f"Invalid code. {left} attempt(s) left.", detail={"attempts_left": left}
            )

        # A concurrent winner already deleted it
        if not await self.codes.drop_otp(key):
            raise BadRequestError("Code already used. Request a new one.")
        logger.info("otp_verified", contact=key)
        return {"valid": True, "message": "Code verified."}

    async def invalidate_otp(self, contact: str) -> None:
        await self.codes.drop_otp(normalize_contact(contact))

    async def has_active_otp(self, contact: str) -> bool:
        entry = await self.codes.get_otp(normalize_contact(contact))
        return entry is not None and self.clock() - entry["issued_at"] <= OTP_TTL_SECONDS

"""Tests for one-time codes.

Tests for:
- Issuing, masking and the resend cooldown
- Expiry and the three-attempt limit
- Single use, including concurrent verification
- The HTTP send/verify routes
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from rayauth import app as app_module
from rayauth.config import Settings
from rayauth.service.errors import BadRequestError
from rayauth.service.otp import OtpService, mask_contact


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def otp(clock):
    return OtpService(None, Settings(), clock=clock)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


class TestSend:
    async def test_issues_six_digit_code(self, otp):
        """Outside production the code is echoed with the masked contact."""
        result = await otp.send_otp("  Awa.Kone@Example.com ")

        assert result["success"] is True
        assert len(result["code"]) == 6 and result["code"].isdigit()
        assert 100000 <= int(result["code"]) <= 999999
        assert result["contact"] == "aw***@example.com"
        assert result["expires_in"] == 300
        assert await otp.has_active_otp("awa.kone@example.com")

    async def test_production_hides_code(self, clock):
        """Production responses never carry the code."""
        settings = Settings(
            environment="production", jwt_secret="a" * 32, jwt_refresh_secret="b" * 32
        )
        service = OtpService(None, settings, clock=clock)

        result = await service.send_otp("+2250701020304")

        assert result["success"] is True
        assert "code" not in result
        assert result["contact"] == "+225****04"

    async def test_resend_within_cooldown_refused(self, otp, clock):
        """A second request inside 60 s issues nothing and reports the wait."""
        first = await otp.send_otp("user@example.com")
        clock.advance(20)

        second = await otp.send_otp("user@example.com")

        assert second["success"] is False
        assert second["retry_after"] == 40
        # The first code is still the valid one
        assert (await otp.verify_otp("user@example.com", first["code"]))["valid"] is True

    async def test_resend_after_cooldown_replaces_code(self, otp, clock):
        """After the cooldown a new code supersedes the old one."""
        first = await otp.send_otp("user@example.com")
        clock.advance(61)

        second = await otp.send_otp("user@example.com")

        assert second["success"] is True
        if second["code"] != first["code"]:
            with pytest.raises(BadRequestError):
                await otp.verify_otp("user@example.com", first["code"])
        assert (await otp.verify_otp("user@example.com", second["code"]))["valid"] is True

    def test_mask_contact(self):
        """Emails keep two characters and the domain; phones keep the ends."""
        assert mask_contact("jo@example.com") == "jo***@example.com"
        assert mask_contact("0102030405") == "0102****05"


class TestVerify:
    async def test_correct_code_is_single_use(self, otp):
        """A verified code cannot be presented again."""
        code = (await otp.send_otp("user@example.com"))["code"]

        assert await otp.verify_otp("USER@example.com", code) == {
            "valid": True,
            "message": "Code verified.",
        }
        with pytest.raises(BadRequestError, match="Request a new one"):
            await otp.verify_otp("user@example.com", code)
        assert not await otp.has_active_otp("user@example.com")

    async def test_unknown_contact(self, otp):
        """Verifying without a pending code is a bad request."""
        with pytest.raises(BadRequestError, match="No code pending"):
            await otp.verify_otp("nobody@example.com", "123456")

    async def test_expired_code_rejected(self, otp, clock):
        """Codes older than five minutes are refused and forgotten."""
        code = (await otp.send_otp("user@example.com"))["code"]
        clock.advance(301)

        with pytest.raises(BadRequestError, match="Request a new one"):
            await otp.verify_otp("user@example.com", code)
        assert not await otp.has_active_otp("user@example.com")

    async def test_code_valid_until_ttl(self, otp, clock):
        """A code presented just before expiry still verifies."""
        code = (await otp.send_otp("user@example.com"))["code"]
        clock.advance(299)

        assert (await otp.verify_otp("user@example.com", code))["valid"] is True

    async def test_wrong_code_reports_attempts_left(self, otp):
        """Each wrong code spends one of three attempts."""
        code = (await otp.send_otp("user@example.com"))["code"]

        with pytest.raises(BadRequestError, match="2 attempt") as first:
            await otp.verify_otp("user@example.com", _wrong(code))
        with pytest.raises(BadRequestError, match="1 attempt"):
            await otp.verify_otp("user@example.com", _wrong(code))

        assert first.value.detail == {"attempts_left": 2}
        assert (await otp.verify_otp("user@example.com", code))["valid"] is True

    async def test_third_wrong_code_burns_the_code(self, otp):
        """After three misses even the right code is refused."""
        code = (await otp.send_otp("user@example.com"))["code"]
        for _ in range(2):
            with pytest.raises(BadRequestError, match="attempt"):
                await otp.verify_otp("user@example.com", _wrong(code))

        with pytest.raises(BadRequestError, match="Too many attempts"):
            await otp.verify_otp("user@example.com", _wrong(code))
        with pytest.raises(BadRequestError, match="No code pending"):
            await otp.verify_otp("user@example.com", code)

    async def test_concurrent_guesses_capped(self, otp):
        """Parallel guesses never get more than three comparisons."""
        code = (await otp.send_otp("user@example.com"))["code"]
        wrong = _wrong(code)

        results = await asyncio.gather(
            *(otp.verify_otp("user@example.com", wrong) for _ in range(6)),
            return_exceptions=True,
        )

        assert all(isinstance(r, BadRequestError) for r in results)
        assert not await otp.has_active_otp("user@example.com")

    async def test_concurrent_correct_codes_verify_once(self, otp):
        """Two simultaneous verifications of the right code succeed once."""
        code = (await otp.send_otp("user@example.com"))["code"]

        results = await asyncio.gather(
            otp.verify_otp("user@example.com", code),
            otp.verify_otp("user@example.com", code),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, dict) and r["valid"]) == 1
        assert sum(1 for r in results if isinstance(r, BadRequestError)) == 1

    async def test_invalidate(self, otp):
        """An invalidated code cannot be verified."""
        code = (await otp.send_otp("user@example.com"))["code"]

        await otp.invalidate_otp("user@example.com")

        assert not await otp.has_active_otp("user@example.com")
        with pytest.raises(BadRequestError):
            await otp.verify_otp("user@example.com", code)


class TestOtpRoutes:
    @pytest.fixture
    def client(self):
        with TestClient(app_module.app) as test_client:
            yield test_client

    def test_send_then_verify(self, client):
        """The dev-mode code returned by send verifies over HTTP."""
        sent = client.post("/v1/auth/otp/send", json={"contact": "user@example.com"})
        assert sent.status_code == 200, sent.text
        code = sent.json()["data"]["code"]

        verified = client.post(
            "/v1/auth/otp/verify", json={"contact": "user@example.com", "code": code}
        )

        assert verified.status_code == 200
        assert verified.json()["data"] == {"valid": True, "message": "Code verified."}

    def test_resend_cooldown_is_429(self, client):
        """A second send inside the cooldown answers 429 with Retry-After."""
        client.post("/v1/auth/otp/send", json={"contact": "user@example.com"})

        again = client.post("/v1/auth/otp/send", json={"contact": "user@example.com"})

        assert again.status_code == 429
        assert again.json()["error"]["code"] == "rate_limited"
        assert 0 < int(again.headers["Retry-After"]) <= 60

    def test_wrong_code_is_400(self, client):
        """A wrong code answers 400 with the attempts left."""
        sent = client.post("/v1/auth/otp/send", json={"contact": "user@example.com"})
        code = sent.json()["data"]["code"]

        response = client.post(
            "/v1/auth/otp/verify", json={"contact": "user@example.com", "code": _wrong(code)}
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"attempts_left": 2}

    @pytest.mark.parametrize("code", ["12345", "1234567", "12a456"])
    def test_code_must_be_six_digits(self, client, code):
        """Malformed codes fail request validation."""
        response = client.post(
            "/v1/auth/otp/verify", json={"contact": "user@example.com", "code": code}
        )

        assert response.status_code == 422

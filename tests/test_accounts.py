from datetime import timedelta

import httpx
import pytest

from conftest import NOW, RecordingTransport
from database.operations import unit_of_work
from services.accounts import AccountService, generate_otp
from services.errors import AccountExists, InvalidOtp, NotificationDeliveryError
from services.whatsapp_gateway import WhatsAppGatewayClient


@pytest.fixture
def accounts(catalog, session_factory, settings, whatsapp):
    return AccountService(session_factory, settings, whatsapp)


def stored_otp(session_factory, phone):
    with unit_of_work(session_factory) as repos:
        user = repos.users.find_by_phone(phone)
        return user.otp if user else None


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_sends_otp(self, accounts, session_factory, wa_transport):
        user_id = await accounts.register("Siti", "0812-9876-5432", "siti@example.com", now=NOW)

        with unit_of_work(session_factory) as repos:
            user = repos.users.get(user_id)
            assert user.phone == "6281298765432"
            assert user.phone_verified_at is None
            assert user.otp_expires == NOW + timedelta(minutes=60)
            otp = user.otp

        assert len(wa_transport.requests) == 1
        assert otp in wa_transport.requests[0].content.decode()

    @pytest.mark.asyncio
    async def test_delivery_failure_removes_account(self, catalog, session_factory, settings):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        accounts = AccountService(
            session_factory,
            settings,
            WhatsAppGatewayClient(settings, transport=RecordingTransport(timeout)),
        )

        with pytest.raises(NotificationDeliveryError) as exc_info:
            await accounts.register("Siti", "081298765432", "siti@example.com", now=NOW)

        assert exc_info.value.code == "WHATSAPP_TIMEOUT"
        with unit_of_work(session_factory) as repos:
            assert repos.users.find_by_phone("6281298765432") is None

    @pytest.mark.asyncio
    async def test_duplicate_phone(self, accounts, wa_transport):
        with pytest.raises(AccountExists):
            await accounts.register("Budi again", "081234567890", None, now=NOW)

        assert wa_transport.requests == []

    @pytest.mark.asyncio
    async def test_duplicate_email(self, accounts):
        with pytest.raises(AccountExists):
            await accounts.register("Other", "081111111111", "budi@example.com", now=NOW)


class TestVerifyOtp:
    @pytest.mark.asyncio
    async def test_verify(self, accounts, session_factory):
        user_id = await accounts.register("Siti", "081298765432", now=NOW)
        otp = stored_otp(session_factory, "6281298765432")

        assert accounts.verify_otp("081298765432", otp, now=NOW + timedelta(minutes=5)) == user_id

        with unit_of_work(session_factory) as repos:
            user = repos.users.get(user_id)
            assert user.phone_verified_at == NOW + timedelta(minutes=5)
            assert user.otp is None

    @pytest.mark.asyncio
    async def test_wrong_code(self, accounts, session_factory):
        await accounts.register("Siti", "081298765432", now=NOW)
        otp = stored_otp(session_factory, "6281298765432")
        wrong = "000000" if otp != "000000" else "111111"

        with pytest.raises(InvalidOtp):
            accounts.verify_otp("081298765432", wrong, now=NOW)

    @pytest.mark.asyncio
    async def test_expired_code(self, accounts, session_factory):
        await accounts.register("Siti", "081298765432", now=NOW)
        otp = stored_otp(session_factory, "6281298765432")

        with pytest.raises(InvalidOtp):
            accounts.verify_otp("081298765432", otp, now=NOW + timedelta(minutes=61))

    def test_unknown_phone(self, accounts):
        with pytest.raises(InvalidOtp):
            accounts.verify_otp("089999999999", "123456", now=NOW)


class TestDeleteUnverified:
    @pytest.mark.asyncio
    async def test_only_expired_unverified_accounts(self, accounts, session_factory):
        await accounts.register("Siti", "081298765432", now=NOW)

        assert accounts.delete_unverified(NOW + timedelta(minutes=30)) == 0
        assert accounts.delete_unverified(NOW + timedelta(hours=2)) == 1

        with unit_of_work(session_factory) as repos:
            assert repos.users.find_by_phone("6281298765432") is None
            # Verified customers are never touched
            assert repos.users.get("user-1") is not None


def test_generate_otp():
    otp = generate_otp()
    assert len(otp) == 6
    assert otp.isdigit()

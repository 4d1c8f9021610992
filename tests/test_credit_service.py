import pytest

from errors import AuthLookupError, InsufficientCredits
from services.credit_service import DEFAULT_CREDITS


class TestBalance:
    @pytest.mark.asyncio
    async def test_new_user_gets_the_first_run_grant(self, clerk, ledger):
        clerk.add_user("user_1")
        assert await ledger.get_balance("user_1") == DEFAULT_CREDITS == 3

    @pytest.mark.asyncio
    async def test_stored_balance(self, clerk, ledger):
        clerk.add_user("user_1", credits=7.5)
        assert await ledger.get_balance("user_1") == 7.5

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        with pytest.raises(AuthLookupError):
            await ledger.get_balance("user_missing")


class TestDebit:
    @pytest.mark.asyncio
    async def test_debit_writes_new_balance(self, clerk, ledger):
        clerk.add_user("user_1", credits=3.0)

        assert await ledger.try_debit("user_1", 0.5) == 2.5
        assert clerk.credits("user_1") == 2.5

    @pytest.mark.asyncio
    async def test_debit_never_goes_negative(self, clerk, ledger):
        clerk.add_user("user_1", credits=2.5)

        with pytest.raises(InsufficientCredits) as excinfo:
            await ledger.try_debit("user_1", 3)

        assert excinfo.value.cost == 3
        assert clerk.credits("user_1") == 2.5
        assert clerk.metadata_updates == []


class TestCredit:
    @pytest.mark.asyncio
    async def test_credit_records_key_in_same_update(self, clerk, ledger):
        clerk.add_user("user_1", credits=1)

        result = await ledger.credit("user_1", 10, "payhip:tx_1")

        assert result.added == 10
        assert result.credits == 11
        assert clerk.metadata_updates == [
            ("user_1", {"credits": 11}, {"processedPaymentIds": ["payhip:tx_1"]}),
        ]

    @pytest.mark.asyncio
    async def test_same_key_credits_once(self, clerk, ledger):
        clerk.add_user("user_1", credits=1)

        await ledger.credit("user_1", 10, "paypal:ORDER-1")
        second = await ledger.credit("user_1", 10, "paypal:ORDER-1")

        assert second.added == 0
        assert second.already_processed
        assert clerk.credits("user_1") == 11
        assert len(clerk.metadata_updates) == 1

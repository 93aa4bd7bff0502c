"""
Tests for beta code redemption.
"""

from datetime import datetime, timezone

import pytest

from billing_core.errors import BetaRedemptionError, InvalidBetaCodeError
from billing_core.models.account import SubscriptionStatus
from billing_core.services.beta_access import redeem_beta_code


class TestRedeemBetaCode:

    def test_valid_code_grants_beta(self, make_account, billing_config):
        account = make_account()

        redeemed = redeem_beta_code(account, "LEB BETA", billing_config.beta_codes)

        assert redeemed.subscription_status == SubscriptionStatus.BETA_ACCESS
        assert redeemed.beta_access_code == "LEB BETA"
        assert redeemed.beta_expires_at == datetime(2025, 12, 9, tzinfo=timezone.utc)
        assert account.subscription_status == SubscriptionStatus.NONE

    def test_surrounding_whitespace_is_ignored(self, make_account, billing_config):
        redeemed = redeem_beta_code(make_account(), "  BETA2023 ", billing_config.beta_codes)
        assert redeemed.beta_access_code == "BETA2023"

    @pytest.mark.parametrize("code", ["", "leb beta", "NOPE", "   "])
    def test_unknown_code_rejected(self, make_account, billing_config, code):
        with pytest.raises(InvalidBetaCodeError):
            redeem_beta_code(make_account(), code, billing_config.beta_codes)

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.PAST_DUE,
    ])
    def test_processor_managed_account_refused(self, make_account, billing_config, status):
        with pytest.raises(BetaRedemptionError):
            redeem_beta_code(make_account(subscription_status=status), "LEB BETA", billing_config.beta_codes)

    def test_expired_beta_can_redeem_new_code(self, make_account, billing_config):
        account = make_account(
            subscription_status=SubscriptionStatus.BETA_ACCESS,
            beta_access_code="BETA2023",
            beta_expires_at=datetime(2024, 12, 31, tzinfo=timezone.utc),
        )

        redeemed = redeem_beta_code(account, "LEB BETA", billing_config.beta_codes)

        assert redeemed.beta_expires_at == datetime(2025, 12, 9, tzinfo=timezone.utc)

    def test_defaults_to_configured_codes(self, make_account, make_yaml_config, monkeypatch):
        path = make_yaml_config("billing.yml", {"beta_codes": {"SPRING": "2026-03-01"}})
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(path))

        redeemed = redeem_beta_code(make_account(), "SPRING")

        assert redeemed.beta_expires_at == datetime(2026, 3, 1, tzinfo=timezone.utc)

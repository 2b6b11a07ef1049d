"""Tests for V1 API Pydantic schemas."""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from account_guard.api.v1.schemas import (
    APIKeyCreateRequest,
    AuditExportRequest,
    AuditSearchParams,
    ErrorResponse,
    RateLimitCheckRequest,
    RateLimitRuleSchema,
    WithdrawalCreateRequest,
    WithdrawalLimitSchema,
)


class TestErrorResponse:
    def test_shape(self):
        e = ErrorResponse(code="unauthorized", message="unauthorized")
        assert e.model_dump() == {"code": "unauthorized", "message": "unauthorized"}


class TestAPIKeyCreateRequest:
    def test_defaults(self):
        req = APIKeyCreateRequest(name="bot")
        assert req.permissions == []
        assert req.ip_allow_list == []
        assert req.expires_in_ms is None
        assert req.user_id is None

    def test_empty_name(self):
        with pytest.raises(ValidationError):
            APIKeyCreateRequest(name="")

    def test_non_positive_expiry(self):
        with pytest.raises(ValidationError):
            APIKeyCreateRequest(name="bot", expires_in_ms=0)


class TestRateLimitSchemas:
    def test_rule_defaults(self):
        rule = RateLimitRuleSchema(rule_id="search", window_ms=1000, max_requests=5)
        assert rule.tier == "basic"
        assert rule.reputation_modifier == 1.0

    def test_rule_unknown_tier(self):
        with pytest.raises(ValidationError):
            RateLimitRuleSchema(rule_id="x", window_ms=1000, max_requests=5, tier="gold")

    def test_rule_zero_window(self):
        with pytest.raises(ValidationError):
            RateLimitRuleSchema(rule_id="x", window_ms=0, max_requests=5)

    def test_check_reputation_range(self):
        with pytest.raises(ValidationError):
            RateLimitCheckRequest(identifier="u1", rule_id="login", reputation=1.5)


class TestAuditSchemas:
    def test_search_defaults(self):
        p = AuditSearchParams()
        assert p.limit == 100
        assert p.offset == 0

    def test_search_limit_max(self):
        with pytest.raises(ValidationError):
            AuditSearchParams(limit=2000)

    def test_export_format(self):
        assert AuditExportRequest().format == "json"
        assert AuditExportRequest(format="csv").format == "csv"
        with pytest.raises(ValidationError):
            AuditExportRequest(format="xml")


class TestWithdrawalSchemas:
    def test_amount_parsed_as_decimal(self):
        req = WithdrawalCreateRequest(
            amount="0.10000001", currency="BTC", destination_address="bc1q"
        )
        assert req.amount == Decimal("0.10000001")

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationError):
            WithdrawalCreateRequest(amount=amount, currency="BTC", destination_address="bc1q")

    def test_limit_schema(self):
        limit = WithdrawalLimitSchema(
            daily_limit="1000",
            monthly_limit="5000",
            requires_approval_above="100",
            multi_sig_threshold="900",
        )
        assert limit.model_dump(mode="json")["daily_limit"] == "1000"

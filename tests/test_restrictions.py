"""Tests for per-user IP restrictions."""

from datetime import UTC, datetime, timedelta

import pytest

from sessionguard.services.errors import ValidationFailed
from sessionguard.services.restrictions import SecurityRestrictionStore, ip_matches, parse_network


class TestIPMatching:
    @pytest.mark.parametrize(
        "ip,value,expected",
        [
            ("10.0.0.5", "10.0.0.5", True),
            ("10.0.0.5", "10.0.0.0/24", True),
            ("10.0.1.5", "10.0.0.0/24", False),
            ("2001:db8::1", "2001:db8::/32", True),
            ("10.0.0.5", "2001:db8::/32", False),
            ("not-an-ip", "10.0.0.0/8", False),
        ],
    )
    def test_ip_matches(self, ip, value, expected):
        assert ip_matches(ip, value) is expected

    def test_bare_address_is_single_host(self):
        assert parse_network("192.0.2.7").num_addresses == 1

    def test_host_bits_are_masked(self):
        assert str(parse_network("192.0.2.7/24")) == "192.0.2.0/24"


@pytest.mark.asyncio
class TestSecurityRestrictionStore:
    async def test_no_rules_allows_everything(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        assert await store.is_allowed(user.id, "203.0.113.1") is True
        assert await store.is_allowed(user.id, None) is True
        await db_session.rollback()

    async def test_block_rule(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        await store.add_restriction(user.id, "ip-block", "203.0.113.0/24")

        assert await store.is_allowed(user.id, "203.0.113.9") is False
        assert await store.is_allowed(user.id, "198.51.100.9") is True
        await db_session.rollback()

    async def test_allow_list(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        await store.add_restriction(user.id, "ip-allow", "10.0.0.0/8")

        assert await store.is_allowed(user.id, "10.20.30.40") is True
        assert await store.is_allowed(user.id, "192.0.2.1") is False
        # Rules exist but the address is unknown
        assert await store.is_allowed(user.id, None) is False
        await db_session.rollback()

    async def test_block_beats_allow(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        await store.add_restriction(user.id, "ip-allow", "10.0.0.0/8")
        await store.add_restriction(user.id, "ip-block", "10.0.0.66")

        assert await store.is_allowed(user.id, "10.0.0.65") is True
        assert await store.is_allowed(user.id, "10.0.0.66") is False
        await db_session.rollback()

    async def test_rules_are_per_user(self, db_session, user_factory):
        owner = await user_factory(email="owner@example.com")
        other = await user_factory(email="other@example.com")
        store = SecurityRestrictionStore(db_session)
        await store.add_restriction(owner.id, "ip-block", "192.0.2.0/24")

        assert await store.is_allowed(other.id, "192.0.2.1") is True
        await db_session.rollback()

    async def test_removed_rule_stops_applying(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        rule = await store.add_restriction(user.id, "ip-block", "192.0.2.1")

        removed = await store.remove_restriction(rule.id)
        assert removed is not None
        assert removed.active is False
        assert await store.is_allowed(user.id, "192.0.2.1") is True
        assert await store.remove_restriction(rule.id) is None

        history = await store.list_restrictions(user.id, include_inactive=True)
        assert [r.id for r in history] == [rule.id]
        await db_session.rollback()

    async def test_expire_restrictions(self, db_session, user_factory):
        user = await user_factory()
        store = SecurityRestrictionStore(db_session)
        rule = await store.add_restriction(
            user.id, "ip-block", "192.0.2.1", expires_at=datetime.now(UTC) + timedelta(hours=1)
        )
        rule.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        await db_session.flush()

        assert await store.is_allowed(user.id, "192.0.2.1") is True
        assert await store.expire_restrictions() == 1
        await db_session.rollback()

    @pytest.mark.parametrize(
        "restriction_type,value,field",
        [
            ("ip-allow", "not-an-address", "value"),
            ("country-block", "10.0.0.1", "restriction_type"),
        ],
    )
    async def test_invalid_restriction(self, db_session, user_factory, restriction_type, value, field):
        user = await user_factory()
        with pytest.raises(ValidationFailed) as exc_info:
            await SecurityRestrictionStore(db_session).add_restriction(
                user.id, restriction_type, value
            )
        assert exc_info.value.errors[0]["field"] == field
        await db_session.rollback()

    async def test_expiry_must_be_in_future(self, db_session, user_factory):
        user = await user_factory()
        with pytest.raises(ValidationFailed):
            await SecurityRestrictionStore(db_session).add_restriction(
                user.id,
                "ip-block",
                "10.0.0.1",
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
            )

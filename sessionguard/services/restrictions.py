"""Per-user IP allow/block rules."""

import ipaddress
import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.models import SecurityRestriction
from sessionguard.services.errors import ValidationFailed

logger = logging.getLogger(__name__)

RESTRICTION_TYPES = ("ip-allow", "ip-block")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_network(value: str) -> IPNetwork:
    """Parse an address or CIDR block; a bare address becomes a /32 or /128."""
    return ipaddress.ip_network(value.strip(), strict=False)


def ip_matches(ip: str, value: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
        network = parse_network(value)
    except ValueError:
        return False
    return address.version == network.version and address in network


class SecurityRestrictionStore:
    """Evaluates and manages IP restrictions.

    Evaluation: any matching ``ip-block`` denies; otherwise, if the user has
    at least one ``ip-allow`` rule, the address must match one of them.
    Only active, unexpired rules count.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def _active_rules_query(self, user_id: UUID | None = None):
        now = datetime.now(UTC)
        query = select(SecurityRestriction).where(
            SecurityRestriction.active.is_(True),
            or_(SecurityRestriction.expires_at.is_(None), SecurityRestriction.expires_at > now),
        )
        if user_id is not None:
            query = query.where(SecurityRestriction.user_id == user_id)
        return query

    async def is_allowed(self, user_id: UUID, ip: str | None) -> bool:
        result = await self.session.execute(self._active_rules_query(user_id))
        rules = list(result.scalars().all())
        if not rules:
            return True
        if ip is None:
            # Rules exist but the caller's address is unknown
            return False

        allow_rules = []
        for rule in rules:
            if rule.restriction_type == "ip-block" and ip_matches(ip, rule.value):
                logger.info(f"IP {ip} matched block rule {rule.id} for user {user_id}")
                return False
            if rule.restriction_type == "ip-allow":
                allow_rules.append(rule)

        if allow_rules and not any(ip_matches(ip, rule.value) for rule in allow_rules):
            logger.info(f"IP {ip} not in allow list for user {user_id}")
            return False
        return True

    async def add_restriction(
        self,
        user_id: UUID,
        restriction_type: str,
        value: str,
        expires_at: datetime | None = None,
        notes: str | None = None,
        created_by: UUID | None = None,
    ) -> SecurityRestriction:
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)

        errors = []
        if restriction_type not in RESTRICTION_TYPES:
            errors.append(
                {
                    "field": "restriction_type",
                    "message": f"Must be one of: {', '.join(RESTRICTION_TYPES)}",
                }
            )
        try:
            network = parse_network(value)
        except ValueError:
            errors.append({"field": "value", "message": "Must be an IP address or CIDR network"})
            network = None
        if expires_at is not None and expires_at <= datetime.now(UTC):
            errors.append({"field": "expires_at", "message": "Must be in the future"})
        if errors:
            raise ValidationFailed("Invalid security restriction", errors=errors)

        restriction = SecurityRestriction(
            user_id=user_id,
            restriction_type=restriction_type,
            value=str(network) if "/" in value else str(network.network_address),
            active=True,
            expires_at=expires_at,
            notes=notes,
            created_by=created_by,
        )
        self.session.add(restriction)
        await self.session.flush()
        logger.info(f"Added {restriction_type} restriction {restriction.value} for user {user_id}")
        return restriction

    async def list_restrictions(
        self, user_id: UUID | None = None, include_inactive: bool = False
    ) -> list[SecurityRestriction]:
        if include_inactive:
            query = select(SecurityRestriction)
            if user_id is not None:
                query = query.where(SecurityRestriction.user_id == user_id)
        else:
            query = self._active_rules_query(user_id)
        result = await self.session.execute(query.order_by(SecurityRestriction.created_at.desc()))
        return list(result.scalars().all())

    async def remove_restriction(self, restriction_id: UUID) -> SecurityRestriction | None:
        """Deactivate a rule. Returns None if it does not exist or is inactive."""
        restriction = await self.session.get(SecurityRestriction, restriction_id)
        if restriction is None or not restriction.active:
            return None
        restriction.active = False
        await self.session.flush()
        return restriction

    async def expire_restrictions(self) -> int:
        """Deactivate rules whose expiry has passed."""
        result = await self.session.execute(
            update(SecurityRestriction)
            .where(
                SecurityRestriction.active.is_(True),
                SecurityRestriction.expires_at.is_not(None),
                SecurityRestriction.expires_at <= datetime.now(UTC),
            )
            .values(active=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

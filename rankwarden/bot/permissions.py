"""Maps Discord roles to rank engine capabilities"""

from typing import Iterable

import discord
from discord import app_commands

from rankwarden.services.identity import ActingUser
from rankwarden.utils.constants import CAPABILITY_ROLES


def capabilities_for_roles(role_names: Iterable[str]) -> frozenset:
    names = set(role_names)
    return frozenset(
        capability for capability, roles in CAPABILITY_ROLES.items()
        if names.intersection(roles)
    )


def acting_user_from_member(member: discord.abc.User) -> ActingUser:
    roles = getattr(member, 'roles', [])
    return ActingUser(
        id=str(member.id),
        display_name=member.display_name,
        capabilities=capabilities_for_roles(role.name for role in roles),
    )


def require_capability(capability: str):
    """Slash command check: the invoking member must hold ``capability``"""
    async def predicate(interaction: discord.Interaction) -> bool:
        user = acting_user_from_member(interaction.user)
        if not user.has(capability):
            raise app_commands.MissingAnyRole(CAPABILITY_ROLES.get(capability, []))
        return True

    return app_commands.check(predicate)

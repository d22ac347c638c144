import discord
from discord import app_commands
from discord.ext import commands
import logging
from typing import Optional
from datetime import datetime, timedelta, timezone

from rankwarden.bot.permissions import acting_user_from_member, require_capability
from rankwarden.db.database import session_scope
from rankwarden.db.models import Employee
from rankwarden.db.repository import EmployeeRepository
from rankwarden.exceptions import RankEngineError
from rankwarden.services.identity import ADMIN_FULL, RANK_CHANGE, RANK_VIEW
from rankwarden.services.transitions import TransitionDirection, TransitionResult
from rankwarden.utils.constants import LOGGER_NAME, RANK_SETTINGS

logger = logging.getLogger(LOGGER_NAME)


async def find_employee(bot, member: discord.abc.User) -> Optional[Employee]:
    """Roster entry linked to a Discord member"""
    async with session_scope(bot.session_factory) as s:
        return await EmployeeRepository(s).get_by_discord_id(str(member.id))


async def send_failure(interaction: discord.Interaction, error: Exception, action: str):
    """Ephemeral reply for a failed command. Engine errors carry their own wording."""
    if isinstance(error, RankEngineError):
        logger.info(f"{action} rejected [{error.code}]: {error}")
        message = f"❌ {error.user_message()}"
    else:
        logger.error(f"Error in {action}: {error}")
        message = f"❌ An error occurred during {action}."

    if interaction.response.is_done():
        await interaction.followup.send(message, ephemeral=True)
    else:
        await interaction.response.send_message(message, ephemeral=True)


class RankChangeModal(discord.ui.Modal):
    def __init__(self, cog, member: discord.Member, direction: TransitionDirection):
        title = 'Member Promotion' if direction is TransitionDirection.PROMOTION else 'Member Demotion'
        super().__init__(title=title)
        self.cog = cog
        self.member = member
        self.direction = direction

        self.reason = discord.ui.TextInput(
            label=f'{title.split()[-1]} Reason',
            placeholder='Enter the reason...',
            required=True,
            min_length=10,
            max_length=1000,
            style=discord.TextStyle.paragraph
        )

        self.add_item(self.reason)

    async def on_submit(self, interaction: discord.Interaction):
        """Handle rank change modal submission"""
        await interaction.response.defer(ephemeral=True)
        await self.cog.process_rank_change(interaction, self.member, self.direction, str(self.reason))


class RanksCog(commands.Cog):
    """Promotions, demotions, badges and uprank locks"""

    def __init__(self, bot):
        self.bot = bot
        logger.info("Ranks cog initialized")

    def format_result(self, member: discord.Member, result: TransitionResult) -> str:
        verb = 'promoted' if result.direction is TransitionDirection.PROMOTION else 'moved'
        lines = [f"✅ {member.mention} {verb} from **{result.old_rank}** to **{result.new_rank}**."]
        if result.team_changed:
            lines.append(f"• Team: {result.old_team.value} → {result.new_team.value}")
        if result.new_badge_number:
            lines.append(f"• Badge: {result.old_badge_number or 'None'} → {result.new_badge_number}")
        if result.locked_until:
            lines.append(f"• Uprank lock until {result.locked_until.strftime('%Y-%m-%d')}")
        return "\n".join(lines)

    async def process_rank_change(self,
                                  interaction: discord.Interaction,
                                  member: discord.Member,
                                  direction: TransitionDirection,
                                  reason: str):
        """Run a one-level promotion or demotion through the rank engine"""
        action = direction.value.lower()
        try:
            employee = await find_employee(self.bot, member)
            if employee is None:
                await interaction.followup.send(
                    f"❌ {member.mention} is not on the roster.",
                    ephemeral=True
                )
                return

            acting_user = acting_user_from_member(interaction.user)
            if direction is TransitionDirection.PROMOTION:
                result = await self.bot.rank_engine.promote(employee.id, acting_user, reason)
            else:
                result = await self.bot.rank_engine.demote(employee.id, acting_user, reason)

            await interaction.followup.send(self.format_result(member, result), ephemeral=True)

        except Exception as e:
            await send_failure(interaction, e, action)

    @app_commands.command(
        name="promote",
        description="Promote a member one rank"
    )
    @require_capability(RANK_CHANGE)
    async def promote(self, interaction: discord.Interaction, member: discord.Member):
        await interaction.response.send_modal(
            RankChangeModal(self, member, TransitionDirection.PROMOTION)
        )

    @app_commands.command(
        name="demote",
        description="Move a member down one rank"
    )
    @require_capability(RANK_CHANGE)
    async def demote(self, interaction: discord.Interaction, member: discord.Member):
        await interaction.response.send_modal(
            RankChangeModal(self, member, TransitionDirection.DEMOTION)
        )

    @app_commands.command(
        name="badge-assign",
        description="Give a member a specific badge number from their team pool"
    )
    @app_commands.describe(badge_number="Badge number, e.g. S-42")
    @require_capability(ADMIN_FULL)
    async def badge_assign(self, interaction: discord.Interaction,
                           member: discord.Member, badge_number: str):
        await interaction.response.defer(ephemeral=True)
        try:
            employee = await find_employee(self.bot, member)
            if employee is None:
                await interaction.followup.send(f"❌ {member.mention} is not on the roster.", ephemeral=True)
                return

            updated = await self.bot.rank_engine.assign_badge(
                employee.id, badge_number, acting_user_from_member(interaction.user)
            )
            await interaction.followup.send(
                f"✅ {member.mention} now carries badge **{updated.badge_number}**.",
                ephemeral=True
            )
        except Exception as e:
            await send_failure(interaction, e, "badge assignment")

    @app_commands.command(
        name="rank-history",
        description="View a member's rank history"
    )
    @require_capability(RANK_VIEW)
    async def rank_history(self, interaction: discord.Interaction,
                           member: discord.Member):
        """View rank history for a member"""
        await interaction.response.defer(ephemeral=True)

        try:
            employee = await find_employee(self.bot, member)
            history = (
                await self.bot.archive.history(employee.id, RANK_SETTINGS['HISTORY_LIMIT'])
                if employee else []
            )

            if not history:
                await interaction.followup.send(
                    f"No rank history found for {member.mention}",
                    ephemeral=True
                )
                return

            embed = discord.Embed(
                title=f"📊 Rank History for {member.display_name}",
                color=discord.Color.blue(),
                timestamp=datetime.now(timezone.utc)
            )

            for entry in history:
                badge = ""
                if entry.new_badge_number != entry.old_badge_number:
                    badge = f"\nBadge: {entry.old_badge_number or 'None'} → {entry.new_badge_number}"
                embed.add_field(
                    name=entry.promoted_at.strftime('%Y-%m-%d %H:%M'),
                    value=f"From: {entry.old_rank}\n"
                          f"To: {entry.new_rank}{badge}\n"
                          f"Reason: {entry.reason or 'None'}",
                    inline=False
                )

            await interaction.followup.send(embed=embed, ephemeral=True)

        except Exception as e:
            await send_failure(interaction, e, "rank history lookup")

    @app_commands.command(
        name="uprank-lock",
        description="Block a member from promotion for a number of days"
    )
    @require_capability(ADMIN_FULL)
    async def uprank_lock(self, interaction: discord.Interaction,
                          member: discord.Member,
                          days: app_commands.Range[int, 1, 365],
                          reason: str):
        await interaction.response.defer(ephemeral=True)
        try:
            employee = await find_employee(self.bot, member)
            if employee is None:
                await interaction.followup.send(f"❌ {member.mention} is not on the roster.", ephemeral=True)
                return

            lock_manager = self.bot.lock_manager
            lock = await lock_manager.create_manual_lock(
                employee.id,
                lock_manager.clock.now() + timedelta(days=days),
                reason,
                str(interaction.user.id)
            )
            await interaction.followup.send(
                f"🔒 {member.mention} is locked from promotion until "
                f"{lock.locked_until.strftime('%Y-%m-%d')}.",
                ephemeral=True
            )
        except Exception as e:
            await send_failure(interaction, e, "uprank lock")

    @app_commands.command(
        name="uprank-locks",
        description="List active uprank locks"
    )
    @require_capability(RANK_VIEW)
    async def uprank_locks(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        try:
            locks = await self.bot.lock_manager.list_active_locks()
            stats = await self.bot.lock_manager.lock_stats()

            embed = discord.Embed(
                title="🔒 Active Uprank Locks",
                description=f"{stats['active']} active, {stats['expired']} expired or lifted",
                color=discord.Color.orange(),
                timestamp=datetime.now(timezone.utc)
            )
            # Discord embeds take at most 25 fields
            for lock in locks[:25]:
                embed.add_field(
                    name=f"{lock.employee_id} ({lock.team})",
                    value=f"Until {lock.locked_until.strftime('%Y-%m-%d %H:%M')}\n"
                          f"{lock.reason or ''}\nID: `{lock.id}`",
                    inline=False
                )

            await interaction.followup.send(embed=embed, ephemeral=True)
        except Exception as e:
            await send_failure(interaction, e, "lock listing")

    @app_commands.command(
        name="uprank-lock-revoke",
        description="Lift an uprank lock early"
    )
    @require_capability(ADMIN_FULL)
    async def uprank_lock_revoke(self, interaction: discord.Interaction, lock_id: str):
        await interaction.response.defer(ephemeral=True)
        try:
            lock = await self.bot.lock_manager.revoke_lock(lock_id, str(interaction.user.id))
            await interaction.followup.send(
                f"🔓 Uprank lock `{lock.id}` lifted.",
                ephemeral=True
            )
        except Exception as e:
            await send_failure(interaction, e, "lock revocation")

async def setup(bot):
    """Safe setup function for ranks cog"""
    try:
        if not bot.get_cog('RanksCog'):
            await bot.add_cog(RanksCog(bot))
            logger.info('Ranks cog loaded successfully')
        else:
            logger.info('Ranks cog already loaded, skipping')
    except Exception as e:
        logger.error(f'Error loading ranks cog: {e}')
        raise

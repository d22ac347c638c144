import discord
from discord import app_commands
from discord.ext import commands
import logging
from typing import List, Optional
from datetime import datetime, timezone

from rankwarden.bot.permissions import acting_user_from_member, require_capability
from rankwarden.cogs.ranks import find_employee, send_failure
from rankwarden.db.models import UprankRequest
from rankwarden.services.identity import RANK_APPROVE, RANK_REQUEST, RANK_VIEW
from rankwarden.services.uprank_requests import RequestDecision
from rankwarden.utils.constants import LOGGER_NAME, REQUEST_STATUSES

logger = logging.getLogger(LOGGER_NAME)

STATUS_ICONS = {'PENDING': '⏳', 'APPROVED': '✅', 'REJECTED': '❌'}


class UprankRequestsCog(commands.Cog):
    """Approval-gated promotions"""

    def __init__(self, bot):
        self.bot = bot
        logger.info("Uprank requests cog initialized")

    async def target_rank_autocomplete(self,
                                       interaction: discord.Interaction,
                                       current: str) -> List[app_commands.Choice[str]]:
        return [
            app_commands.Choice(name=rank.name, value=rank.name)
            for rank in self.bot.catalog.ranks
            if current.lower() in rank.name.lower()
        ][:25]

    def request_embed(self, requests: List[UprankRequest], title: str) -> discord.Embed:
        embed = discord.Embed(
            title=title,
            color=discord.Color.blue(),
            timestamp=datetime.now(timezone.utc)
        )
        if not requests:
            embed.description = "No uprank requests found."
        # Discord embeds take at most 25 fields
        for request in requests[:25]:
            value = (f"{request.current_rank} → **{request.target_rank}**\n"
                     f"Reason: {request.reason}\nID: `{request.id}`")
            if request.rejection_reason:
                value += f"\nRejected: {request.rejection_reason}"
            embed.add_field(
                name=f"{STATUS_ICONS.get(request.status, '')} {request.employee_id} "
                     f"({request.created_at.strftime('%Y-%m-%d')})",
                value=value,
                inline=False
            )
        return embed

    @app_commands.command(
        name="uprank-request",
        description="Propose a member for promotion"
    )
    @app_commands.describe(
        target_rank="Rank to promote to",
        reason="Why the member deserves the promotion",
        interview_completed="Confirm the promotion interview has been held",
        interview_date="Day of the interview (YYYY-MM-DD), defaults to today",
        achievements="Notable achievements",
        interview_notes="Notes from the promotion interview",
        academy="Academy graduation rather than a regular promotion"
    )
    @app_commands.autocomplete(target_rank=target_rank_autocomplete)
    @require_capability(RANK_REQUEST)
    async def uprank_request(self, interaction: discord.Interaction,
                             member: discord.Member,
                             target_rank: str,
                             reason: str,
                             interview_completed: bool,
                             achievements: Optional[str] = None,
                             interview_notes: Optional[str] = None,
                             interview_date: Optional[str] = None,
                             academy: bool = False):
        await interaction.response.defer(ephemeral=True)
        try:
            held_on = None
            if interview_date:
                try:
                    held_on = datetime.strptime(interview_date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
                except ValueError:
                    await interaction.followup.send("❌ Interview date must look like 2024-03-01.", ephemeral=True)
                    return

            employee = await find_employee(self.bot, member)
            if employee is None:
                await interaction.followup.send(f"❌ {member.mention} is not on the roster.", ephemeral=True)
                return

            request = await self.bot.uprank_workflow.submit(
                employee.id,
                target_rank,
                reason,
                str(interaction.user.id),
                achievements=achievements,
                interview_completed=interview_completed,
                interview_notes=interview_notes,
                interview_date=held_on,
                is_academy_request=academy
            )
            await interaction.followup.send(
                f"📨 Uprank request for {member.mention} to **{request.target_rank}** submitted.\n"
                f"ID: `{request.id}`",
                ephemeral=True
            )
        except Exception as e:
            await send_failure(interaction, e, "uprank request")

    @app_commands.command(
        name="uprank-process",
        description="Approve or reject a pending uprank request"
    )
    @app_commands.choices(decision=[
        app_commands.Choice(name="Approve", value=RequestDecision.APPROVE.value),
        app_commands.Choice(name="Reject", value=RequestDecision.REJECT.value),
    ])
    @require_capability(RANK_APPROVE)
    async def uprank_process(self, interaction: discord.Interaction,
                             request_id: str,
                             decision: app_commands.Choice[str],
                             rejection_reason: Optional[str] = None):
        await interaction.response.defer(ephemeral=True)
        try:
            outcome = await self.bot.uprank_workflow.process(
                request_id,
                RequestDecision(decision.value),
                acting_user_from_member(interaction.user),
                rejection_reason
            )

            if outcome.approved:
                transition = outcome.transition
                message = (f"✅ Request `{request_id}` approved: "
                           f"{transition.old_rank} → **{transition.new_rank}**")
                if transition.new_badge_number:
                    message += f", badge {transition.new_badge_number}"
            else:
                message = f"❌ Request `{request_id}` rejected."

            await interaction.followup.send(message, ephemeral=True)
        except Exception as e:
            await send_failure(interaction, e, "request processing")

    @app_commands.command(
        name="uprank-delete",
        description="Withdraw a pending uprank request"
    )
    @require_capability(RANK_REQUEST)
    async def uprank_delete(self, interaction: discord.Interaction, request_id: str):
        await interaction.response.defer(ephemeral=True)
        try:
            await self.bot.uprank_workflow.delete(request_id, acting_user_from_member(interaction.user))
            await interaction.followup.send(f"🗑️ Request `{request_id}` deleted.", ephemeral=True)
        except Exception as e:
            await send_failure(interaction, e, "request deletion")

    @app_commands.command(
        name="uprank-requests",
        description="List uprank requests"
    )
    @app_commands.choices(status=[
        app_commands.Choice(name=status.title(), value=status) for status in REQUEST_STATUSES
    ])
    @require_capability(RANK_VIEW)
    async def uprank_requests(self, interaction: discord.Interaction,
                              status: Optional[app_commands.Choice[str]] = None,
                              mine: bool = False):
        await interaction.response.defer(ephemeral=True)
        try:
            workflow = self.bot.uprank_workflow
            if mine:
                requests = await workflow.list_for_requester(str(interaction.user.id))
                title = "📋 My Uprank Requests"
            else:
                requests = await workflow.list_requests(status.value if status else None)
                title = f"📋 Uprank Requests{f' ({status.name})' if status else ''}"

            embed = self.request_embed(requests, title)
            stats = await workflow.stats()
            embed.set_footer(
                text=f"{stats['pending']} pending • {stats['approved']} approved • "
                     f"{stats['rejected']} rejected"
            )
            await interaction.followup.send(embed=embed, ephemeral=True)
        except Exception as e:
            await send_failure(interaction, e, "request listing")

async def setup(bot):
    """Safe setup function for uprank requests cog"""
    try:
        if not bot.get_cog('UprankRequestsCog'):
            await bot.add_cog(UprankRequestsCog(bot))
            logger.info('Uprank requests cog loaded successfully')
        else:
            logger.info('Uprank requests cog already loaded, skipping')
    except Exception as e:
        logger.error(f'Error loading uprank requests cog: {e}')
        raise

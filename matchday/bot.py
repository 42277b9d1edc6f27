import discord
from discord import app_commands
from datetime import datetime, timezone
from typing import Optional

from matchday.bot_logging import (
    bot_logger, log_bot_lifecycle, log_command, log_command_result, log_error, setup_bot_logging,
)
from matchday.config import BotConfig, is_contract_available, is_user_admin
from matchday.contract_gateway import ContractGateway
from matchday.formatting import format_eth, format_outcome, parse_outcome, truncate_address, wei_to_eth_str
from matchday.intents import IntentRegister
from matchday.ledger import Ledger
from matchday.models import ActionResult, InteractivePrompt, TransactionRequest
from matchday.settlement import SettlementOrchestrator
from matchday.wallets import WalletRegistry

BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
}

intents = discord.Intents.default()
bot = discord.Client(intents=intents)
tree = app_commands.CommandTree(bot)

ledger = Ledger()
wallet_registry = WalletRegistry()
intent_register = IntentRegister()


async def safe_defer(interaction, ephemeral=True):
    """Safely defer interaction response"""
    try:
        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=ephemeral, thinking=True)
    except (discord.errors.NotFound, discord.errors.HTTPException):
        pass


async def safe_interaction_response(interaction, embed=None, content=None, ephemeral=True):
    """Safely send interaction response, handling expired/acknowledged interactions"""
    try:
        if interaction.response.is_done():
            await interaction.followup.send(content=content, embed=embed, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(content=content, embed=embed, ephemeral=ephemeral)
    except (discord.errors.NotFound, discord.errors.HTTPException) as e:
        log_error("safe_interaction_response", str(e), interaction.user.id)


def thread_of(interaction: discord.Interaction) -> Optional[int]:
    return interaction.channel_id if isinstance(interaction.channel, discord.Thread) else None


async def reply_with_result(interaction: discord.Interaction, command: str, result: ActionResult, public_on_success=False):
    """Failures stay private; a success worth announcing is posted to the channel as its own message"""
    posted = False
    if public_on_success and result.success and interaction.channel is not None:
        try:
            await interaction.channel.send(result.message, allowed_mentions=discord.AllowedMentions(users=True))
            posted = True
        except discord.HTTPException as e:
            log_error("post_public_result", str(e), interaction.user.id)
    await safe_interaction_response(interaction, content="✅ Done." if posted else result.message, ephemeral=True)
    log_command_result(interaction.user.id, command, result.success,
                       result.error.value if result.error else None)


class DiscordTransport:
    """Chat transport for the settlement engine: plain messages, button prompts, transaction requests"""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _destination(self, channel_id, thread_id=None):
        target_id = int(thread_id or channel_id)
        channel = self.client.get_channel(target_id)
        if channel is None:
            channel = await self.client.fetch_channel(target_id)
        return channel

    async def send_message(self, channel_id, text: str, thread_id=None):
        channel = await self._destination(channel_id, thread_id)
        await channel.send(text)

    async def send_interactive_prompt(self, channel_id, prompt: InteractivePrompt, recipient_id, thread_id=None):
        channel = await self._destination(channel_id, thread_id)
        view = discord.ui.View(timeout=None)
        for button in prompt.buttons:
            view.add_item(PromptButtonItem(button.id, prompt.request_id, button.label,
                                           BUTTON_STYLES.get(button.style, discord.ButtonStyle.primary)))
        await channel.send(f"<@{recipient_id}>\n{prompt.content}", view=view,
                           allowed_mentions=discord.AllowedMentions(users=True))

    async def send_transaction_request(self, channel_id, request: TransactionRequest, recipient_id, thread_id=None):
        channel = await self._destination(channel_id, thread_id)
        embed = discord.Embed(
            title=f"✍️ {request.title}",
            description="Send this transaction from your wallet, then press **Submit transaction hash**.",
            color=0x0099ff
        )
        embed.add_field(name="To", value=f"`{request.to}`", inline=False)
        embed.add_field(name="Value", value=f"`{request.value_wei}` wei ({wei_to_eth_str(request.value_wei)} ETH)",
                        inline=True)
        embed.add_field(name="Chain ID", value=str(request.chain_id), inline=True)
        embed.add_field(name="Data", value=f"```{request.data}```", inline=False)
        if request.signer_wallet:
            embed.add_field(name="Sign with", value=f"`{request.signer_wallet}`", inline=False)
        embed.set_footer(text=f"Request: {request.request_id}")

        view = discord.ui.View(timeout=None)
        view.add_item(TransactionButtonItem("submit", request.request_id))
        view.add_item(TransactionButtonItem("reject", request.request_id))
        await channel.send(f"<@{recipient_id}>", embed=embed, view=view,
                           allowed_mentions=discord.AllowedMentions(users=True))


settlement: Optional[SettlementOrchestrator] = None


def get_settlement() -> SettlementOrchestrator:
    """Built on first use so the bot can start before the contract is deployed"""
    global settlement
    if settlement is None:
        settlement = SettlementOrchestrator(ContractGateway(), ledger, wallet_registry, DiscordTransport(bot),
                                            intents=intent_register)
    return settlement


async def refuse_if_not_recipient(interaction: discord.Interaction) -> bool:
    """Prompts mention their recipient; anyone else is turned away"""
    if interaction.user.id in interaction.message.raw_mentions:
        return False
    await safe_interaction_response(interaction, content="❌ This prompt isn't for you.", ephemeral=True)
    return True


class PromptButtonItem(discord.ui.DynamicItem[discord.ui.Button], template=r"(?P<button>confirm|cancel):(?P<token>\S+)"):
    """Button on a confirm/claim prompt; custom_id is "<button>:<correlation token>" so it survives restarts"""

    def __init__(self, button_id: str, token: str, label: str = None, style=discord.ButtonStyle.primary):
        super().__init__(discord.ui.Button(label=label or button_id.capitalize(), style=style,
                                           custom_id=f"{button_id}:{token}"))
        self.button_id = button_id
        self.token = token

    @classmethod
    async def from_custom_id(cls, interaction, item, match):
        return cls(match["button"], match["token"])

    async def callback(self, interaction: discord.Interaction):
        if await refuse_if_not_recipient(interaction):
            return
        await safe_defer(interaction, ephemeral=True)
        result = await get_settlement().handle_button_click(self.token, self.button_id, interaction.user.id,
                                                            interaction.channel_id, thread_of(interaction))
        await reply_with_result(interaction, f"button_{self.button_id}", result,
                                public_on_success=self.button_id == "confirm")


class TxHashModal(discord.ui.Modal, title="Submit transaction hash"):
    tx_hash = discord.ui.TextInput(label="Transaction hash", placeholder="0x...", min_length=66, max_length=66)

    def __init__(self, request_id: str):
        super().__init__()
        self.request_id = request_id

    async def on_submit(self, interaction: discord.Interaction):
        await safe_defer(interaction, ephemeral=True)
        result = await get_settlement().handle_transaction_result(
            self.request_id, interaction.user.id, str(self.tx_hash.value), True,
            interaction.channel_id, thread_of(interaction))
        await reply_with_result(interaction, "submit_tx", result, public_on_success=True)


class TransactionButtonItem(discord.ui.DynamicItem[discord.ui.Button], template=r"(?P<action>submit|reject)_tx:(?P<token>\S+)"):
    def __init__(self, action: str, token: str):
        label = "Submit transaction hash" if action == "submit" else "I rejected it"
        style = discord.ButtonStyle.success if action == "submit" else discord.ButtonStyle.secondary
        super().__init__(discord.ui.Button(label=label, style=style, custom_id=f"{action}_tx:{token}"))
        self.action = action
        self.token = token

    @classmethod
    async def from_custom_id(cls, interaction, item, match):
        return cls(match["action"], match["token"])

    async def callback(self, interaction: discord.Interaction):
        if await refuse_if_not_recipient(interaction):
            return
        if self.action == "submit":
            await interaction.response.send_modal(TxHashModal(self.token))
            return
        await safe_defer(interaction, ephemeral=True)
        result = await get_settlement().handle_transaction_result(self.token, interaction.user.id, None, False,
                                                                  interaction.channel_id, thread_of(interaction))
        await reply_with_result(interaction, "reject_tx", result)


@bot.event
async def on_ready():
    """Bot startup event"""
    bot_logger.info(f'STARTUP | {bot.user} is online!')
    if not is_contract_available():
        bot_logger.warning("STARTUP | CONTRACT_ADDRESS is not set - betting commands will refuse politely")

    try:
        synced = await tree.sync()
        bot_logger.info(f'STARTUP | Synced {len(synced)} command(s)')
    except Exception as e:
        log_error("on_ready_sync_commands", str(e))


@tree.command(name="matches", description="Show today's matches")
@log_command
async def matches(interaction: discord.Interaction):
    todays = ledger.get_todays_matches()
    if not todays:
        await safe_interaction_response(interaction, content="📭 No matches today.", ephemeral=True)
        return

    embed = discord.Embed(title="⚽ Today's Matches", color=0x0099ff)
    for match in todays:
        kickoff = datetime.fromtimestamp(match.kickoff_time, tz=timezone.utc).strftime('%H:%M UTC')
        status = f"Result: {format_outcome(match.result)}" if match.result is not None else match.status
        embed.add_field(name=f"#{match.daily_id} {match.title}",
                        value=f"{match.competition} • {kickoff} • {status}\nCode: `{match.match_code}`", inline=False)
    embed.set_footer(text="Bet with /bet <number> <home|draw|away> <amount>")
    await safe_interaction_response(interaction, embed=embed, ephemeral=True)


@tree.command(name="bet", description="Place a bet on one of today's matches")
@app_commands.describe(match="Match number from /matches or a match code", prediction="home, draw or away",
                       amount="Stake in ETH, e.g. 0.01")
@log_command
async def bet(interaction: discord.Interaction, match: str, prediction: str, amount: str):
    await safe_defer(interaction, ephemeral=True)
    result = await get_settlement().place_wager_intent(interaction.user.id, match, prediction, amount,
                                                       interaction.channel_id, thread_of(interaction))
    await reply_with_result(interaction, "bet", result)


@tree.command(name="pending", description="Show your pending bet")
@log_command
async def pending(interaction: discord.Interaction):
    result = await get_settlement().describe_pending(interaction.user.id)
    await reply_with_result(interaction, "pending", result)


@tree.command(name="cancel", description="Cancel your pending bet")
@log_command
async def cancel(interaction: discord.Interaction):
    result = await get_settlement().cancel_intent(interaction.user.id)
    await reply_with_result(interaction, "cancel", result)


@tree.command(name="claim", description="Claim winnings from a resolved match")
@app_commands.describe(match="Match number from today or a match code like 20260108-2")
@log_command
async def claim(interaction: discord.Interaction, match: str):
    await safe_defer(interaction, ephemeral=True)
    result = await get_settlement().request_claim(interaction.user.id, match, interaction.channel_id,
                                                  thread_of(interaction))
    await reply_with_result(interaction, "claim", result)


@tree.command(name="claim_refund", description="Claim a refund from a cancelled match")
@app_commands.describe(match="Match number from today or a match code like 20260108-2")
@log_command
async def claim_refund(interaction: discord.Interaction, match: str):
    await safe_defer(interaction, ephemeral=True)
    result = await get_settlement().request_refund(interaction.user.id, match, interaction.channel_id,
                                                   thread_of(interaction))
    await reply_with_result(interaction, "claim_refund", result)


@tree.command(name="claim_all", description="Get a claim prompt for every match you can collect from")
@log_command
async def claim_all(interaction: discord.Interaction):
    await safe_defer(interaction, ephemeral=True)
    result = await get_settlement().request_claim_all(interaction.user.id, interaction.channel_id, thread_of(interaction))
    await reply_with_result(interaction, "claim_all", result)


@tree.command(name="verify", description="Sync bets you placed on-chain into your history")
@log_command
async def verify(interaction: discord.Interaction):
    await safe_defer(interaction, ephemeral=True)
    result = await get_settlement().reconcile(interaction.user.id)
    await reply_with_result(interaction, "verify", result)


@tree.command(name="mybets", description="Show your recorded bets")
@log_command
async def mybets(interaction: discord.Interaction):
    records = ledger.get_user_bets(interaction.user.id)
    if not records:
        await safe_interaction_response(interaction, content="📭 You have no recorded bets. "
                                        "Bet from another wallet? Try `/verify`.", ephemeral=True)
        return

    embed = discord.Embed(title="🎯 Your Bets", color=0x0099ff)
    for record in records[-20:]:
        match = ledger.get_match(record.match_id)
        title = match.title if match else f"Match {record.match_id}"
        claimed = " • claimed ✅" if record.claimed else ""
        embed.add_field(name=title, value=f"{format_outcome(record.prediction)} • {format_eth(record.stake_wei)} ETH "
                                          f"• {truncate_address(record.wallet_address)}{claimed}", inline=False)
    stats = ledger.get_stats(interaction.user.id)
    embed.set_footer(text=f"Bets: {stats['total_bets']} • Wagered: {stats['total_wagered']} ETH • "
                          f"Won: {stats['total_won']} ETH")
    await safe_interaction_response(interaction, embed=embed, ephemeral=True)


@tree.command(name="link_wallet", description="Link an EVM wallet you bet from")
@app_commands.describe(address="Wallet address (0x...)", primary="Make this your primary wallet for claims")
@log_command
async def link_wallet(interaction: discord.Interaction, address: str, primary: bool = False):
    ok, message = wallet_registry.link_wallet(interaction.user.id, address, primary=primary)
    await safe_interaction_response(interaction, content=message, ephemeral=True)
    log_command_result(interaction.user.id, "link_wallet", ok)


@tree.command(name="wallet_info", description="View your linked wallets")
@log_command
async def wallet_info(interaction: discord.Interaction):
    wallets = await wallet_registry.resolve_linked_wallets(interaction.user.id)
    if not wallets:
        embed = discord.Embed(
            title="❌ No Wallet Found",
            description="You haven't linked a wallet yet. Use `/link_wallet <address>`.",
            color=0xff0000
        )
        await safe_interaction_response(interaction, embed=embed, ephemeral=True)
        return

    embed = discord.Embed(title="💰 Your Wallets", color=0x0099ff)
    embed.add_field(name="⭐ Primary", value=f"`{wallets[0]}`", inline=False)
    for address in wallets[1:]:
        embed.add_field(name="🔗 Linked", value=f"`{address}`", inline=False)
    embed.add_field(name="💡 Tip", value="Sign bets from any of these; claims use the wallet that placed the bet.",
                    inline=False)
    await safe_interaction_response(interaction, embed=embed, ephemeral=True)


@tree.command(name="add_match", description="[Admin] Add a fixture")
@app_commands.describe(kickoff="Kickoff in UTC, format YYYY-MM-DD HH:MM")
@log_command
async def add_match(interaction: discord.Interaction, home_team: str, away_team: str, competition: str, kickoff: str):
    if not is_user_admin(interaction.user.id):
        await safe_interaction_response(interaction, content="❌ Admins only.", ephemeral=True)
        return
    try:
        kickoff_dt = datetime.strptime(kickoff, "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)
    except ValueError:
        await safe_interaction_response(interaction, content="❌ Kickoff must look like `2026-01-08 19:45`.",
                                        ephemeral=True)
        return

    match = ledger.add_match(home_team, away_team, competition, int(kickoff_dt.timestamp()))
    await safe_interaction_response(interaction, content=f"✅ Added **{match.title}** as `{match.match_code}`.",
                                    ephemeral=True)


@tree.command(name="set_result", description="[Admin] Record a match result or cancellation")
@app_commands.describe(match="Match number or code", result="home, draw, away or cancelled")
@log_command
async def set_result(interaction: discord.Interaction, match: str, result: str):
    if not is_user_admin(interaction.user.id):
        await safe_interaction_response(interaction, content="❌ Admins only.", ephemeral=True)
        return

    found, error_message = ledger.find_match(match, "/set_result")
    if found is None:
        await safe_interaction_response(interaction, content=error_message, ephemeral=True)
        return

    if result.strip().lower() in ("cancelled", "canceled", "cancel"):
        updated = ledger.set_match_result(found.id, None, "CANCELLED")
    else:
        outcome = parse_outcome(result)
        if outcome is None:
            await safe_interaction_response(interaction, content="❌ Result must be home, draw, away or cancelled.",
                                            ephemeral=True)
            return
        updated = ledger.set_match_result(found.id, outcome, "FINISHED")

    shown = format_outcome(updated.result) if updated.result is not None else updated.status
    await safe_interaction_response(interaction, content=f"✅ **{updated.title}**: {shown}", ephemeral=True)


def main():
    setup_bot_logging()
    if not BotConfig.DISCORD_TOKEN:
        raise ValueError("DISCORD_TOKEN not found in environment variables!")

    bot.add_dynamic_items(PromptButtonItem, TransactionButtonItem)
    try:
        log_bot_lifecycle("STARTUP")
        bot.run(BotConfig.DISCORD_TOKEN, log_handler=None)
    except KeyboardInterrupt:
        bot_logger.info("Bot shutdown by user")
    except Exception as e:
        log_error("bot_main", f"Bot crashed: {e}")
        raise
    finally:
        log_bot_lifecycle("SHUTDOWN")


if __name__ == "__main__":
    main()

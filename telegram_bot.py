import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

from telegram import Update
from telegram.ext import (Application, CommandHandler, ContextTypes, ConversationHandler, MessageHandler,
                          filters)
from web3 import Web3

from alerts import AlertEvaluator
from config import Settings
from database import Database
from errors import ChainReadError, ConfigError, MonitorError, TransportError
from lifecycle import PositionLifecycleTracker
from messages import fixed
from models import pool_id
from pool_monitor import PoolMonitor
from PoolManager import LiquidityPoolTracker, SwapLogWatcher
from position_monitor import PositionMonitor
from reconciler import MessageReconciler
from subscriptions import SwapSubscriptionManager
from TelegramManager import Throttler, ThrottledTelegram

logger = logging.getLogger(__name__)

# Conversation states
WAITING_ADDRESS = 1

HELP_TEXT = (
    "🤖 *V3 LP Monitor*\n\n"
    "/pool `<address>` - live price of a pool\n"
    "/stop\\_pool `[address]` - stop a pool\n"
    "/list\\_pools - pools monitored here\n"
    "/notify `<price> [pool]` - one-shot price alert\n"
    "/wallet `[address]` - monitor a wallet\n"
    "/unwallet `<address>` - stop monitoring a wallet\n"
    "/lp - live messages for your positions\n"
    "/help - this message"
)


class TelegramLPBot:
    def __init__(self, settings: Settings, tracker: Optional[LiquidityPoolTracker] = None,
                 db: Optional[Database] = None):
        self.settings = settings
        self.tracker = tracker or LiquidityPoolTracker(
            settings.rpc_url, settings.chain_id, settings.dex, settings.deployment,
            delay_between_calls=settings.rpc_delay, slot0_ttl=settings.slot0_cache_ttl,
            timeout=settings.rpc_timeout)
        self.db = db or Database(settings.db_path)
        self.application = None
        self.telegram = None
        self.subscriptions = None
        self.reconciler = None
        self.pool_monitor = None
        self.position_monitor = None

    def build(self, application: Application):
        """Wire the monitoring core around an application's bot."""
        settings = self.settings
        self.application = application
        self.telegram = ThrottledTelegram(
            application.bot,
            Throttler(settings.max_requests_per_second, 1.0),
            edit_interval=settings.message_edit_delay,
        )
        self.subscriptions = SwapSubscriptionManager(
            SwapLogWatcher(self.tracker, settings.swap_poll_interval, settings.swap_max_failures),
            max_restarts=settings.swap_max_restarts,
            on_stopped=self.on_subscription_stopped,
        )
        self.reconciler = MessageReconciler(self.telegram, self.db)
        self.pool_monitor = PoolMonitor(
            self.tracker, self.subscriptions, self.reconciler, self.telegram, self.db,
            alerts=AlertEvaluator(self.db), timezone=settings.timezone,
            display_decimals=settings.display_decimals)
        self.position_monitor = PositionMonitor(
            self.tracker, self.subscriptions, self.reconciler, self.telegram, self.db,
            lifecycle=PositionLifecycleTracker(settings.dust_threshold), timezone=settings.timezone,
            position_url=settings.position_url, pool_url=settings.pool_url)

    def on_subscription_stopped(self, pool_key: str, error: Exception):
        self.pool_monitor.on_subscription_stopped(pool_key, error)
        self.position_monitor.on_subscription_stopped(pool_key, error)

    async def reply(self, update: Update, text: str, **kwargs):
        try:
            await self.telegram.send_message(update.effective_chat.id, text, **kwargs)
        except TransportError as e:
            logger.error(f"Reply to chat {update.effective_chat.id} failed: {e}")

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.reply(
            update,
            f"👋 *Welcome!*\n\n🔗 Chain ID: {self.settings.chain_id} ({self.settings.dex})\n\n{HELP_TEXT}",
            parse_mode='Markdown')

    async def help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.reply(update, HELP_TEXT, parse_mode='Markdown')

    async def pool(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        if not context.args or not Web3.is_address(context.args[0]):
            await self.reply(update, "❌ Usage: /pool <pool address>")
            return

        try:
            pool = await self.pool_monitor.start_monitoring(context.args[0], chat_id)
        except ChainReadError as e:
            logger.warning(f"/pool {context.args[0]} in chat {chat_id}: {e}")
            await self.reply(update, "❌ Could not read this pool. Is it a V3 pool on this chain?")
            return
        logger.info(f"Chat {chat_id} now monitors {pool.pair}")

    async def stop_pool(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        pools = self.pool_monitor.pools_for_chat(chat_id)

        if context.args:
            if not Web3.is_address(context.args[0]):
                await self.reply(update, "❌ Invalid pool address.")
                return
            key = pool_id(self.settings.chain_id, context.args[0])
        elif len(pools) == 1:
            key = pools[0].id
        elif not pools:
            await self.reply(update, "No pools are monitored in this chat.")
            return
        else:
            listing = "\n".join(f"`{p.address}` {p.pair}" for p in pools)
            await self.reply(update, f"Several pools are monitored, pick one:\n{listing}", parse_mode='Markdown')
            return

        if self.pool_monitor.stop_monitoring(key, chat_id):
            await self.reply(update, "🛑 Pool monitoring stopped.")
        else:
            await self.reply(update, "This pool was not monitored here.")

    async def list_pools(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        pools = self.pool_monitor.pools_for_chat(update.effective_chat.id)
        if not pools:
            await self.reply(update, "No pools are monitored in this chat.\n\nUse /pool <address> to start.")
            return

        decimals = self.settings.display_decimals
        lines = ["📊 *Monitored pools*\n"]
        for pool in pools:
            price = pool.price(decimals)
            alerts = len(self.pool_monitor.alerts.active(pool.id))
            status = "" if pool.monitoring_enabled else " ⛔ inactive"
            lines.append(
                f"• {pool.pair} ({pool.fee_percent}%){status}\n"
                f"  `{pool.address}`\n"
                f"  Price: {fixed(price, decimals) if price is not None else 'N/A'} | Alerts: {alerts}")
        await self.reply(update, "\n".join(lines), parse_mode='Markdown')

    async def notify(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        if not context.args:
            await self.reply(update, "❌ Usage: /notify <price> [pool address]")
            return
        try:
            target = Decimal(context.args[0])
        except InvalidOperation:
            target = None
        if target is None or not target.is_finite() or target <= 0:
            await self.reply(update, "❌ Invalid price.")
            return

        if len(context.args) > 1:
            pool = self.pool_monitor.find_pool(chat_id, context.args[1])
            if pool is None:
                await self.reply(update, "❌ This pool is not monitored here. Start it with /pool first.")
                return
            pools = [pool]
        else:
            pools = [p for p in self.pool_monitor.pools_for_chat(chat_id) if p.price() is not None]
        if not pools:
            await self.reply(update, "No monitored pool with a known price in this chat.")
            return

        for pool in pools:
            self.pool_monitor.add_alert(pool.id, target, chat_id)
        names = ", ".join(p.pair for p in pools)
        await self.reply(update, f"🔔 Alert set at {target} for {names}")

    async def wallet_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if context.args:
            await self._register_wallet(update, context.args[0].strip())
            return ConversationHandler.END

        wallets = self.db.get_chat_wallets(update.effective_chat.id)
        text = "Send me the wallet address you want to monitor, or /cancel."
        if wallets:
            listing = "\n".join(f"`{w}`" for w in wallets)
            text = f"💼 *Monitored wallets*\n{listing}\n\n{text}"
        await self.reply(update, text, parse_mode='Markdown')
        return WAITING_ADDRESS

    async def receive_address(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        address = update.message.text.strip()
        if not Web3.is_address(address):
            await self.reply(update, "❌ Invalid address. Please send a valid Ethereum address starting with 0x")
            return WAITING_ADDRESS
        await self._register_wallet(update, address)
        return ConversationHandler.END

    async def _register_wallet(self, update: Update, address: str):
        if not Web3.is_address(address):
            await self.reply(update, "❌ Invalid address.")
            return
        address = Web3.to_checksum_address(address)
        try:
            count = await self.position_monitor.register_wallet(address, update.effective_chat.id)
        except MonitorError as e:
            logger.warning(f"Registering wallet {address}: {e}")
            await self.reply(update, "❌ Could not read this wallet right now, please try again later.")
            return
        if count is None:
            await self.reply(update, "This wallet is already monitored here.")
            return
        await self.reply(update, f"✅ Monitoring `{address}`\n{count} open position(s). Use /lp to display them.",
                         parse_mode='Markdown')

    async def unwallet(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not context.args or not Web3.is_address(context.args[0]):
            await self.reply(update, "❌ Usage: /unwallet <address>")
            return
        if self.position_monitor.unregister_wallet(context.args[0], update.effective_chat.id):
            await self.reply(update, "🛑 Wallet no longer monitored.")
        else:
            await self.reply(update, "This wallet was not monitored here.")

    async def lp(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat_id = update.effective_chat.id
        if not self.db.get_chat_wallets(chat_id):
            await self.reply(update, "💼 No wallets are being monitored.\n\nUse /wallet to start monitoring a wallet.")
            return
        await self.position_monitor.show_positions(chat_id)

    async def cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self.reply(update, "Cancelled.")
        return ConversationHandler.END

    async def poll_wallets(self, context: ContextTypes.DEFAULT_TYPE):
        await self.position_monitor.poll_wallets()

    async def auto_save(self, context: ContextTypes.DEFAULT_TYPE):
        await self.pool_monitor.save_all()

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        logger.error("Unhandled error while processing an update", exc_info=context.error)

    async def post_init(self, application: Application):
        restored = await self.pool_monitor.restore()
        restored += await self.position_monitor.restore()
        logger.info(f"Restored {restored} live message(s)")

    async def post_shutdown(self, application: Application):
        self.subscriptions.stop_all()
        await self.pool_monitor.save_all()
        self.db.close()

    def run(self):
        application = (
            Application.builder()
            .token(self.settings.telegram_token)
            .post_init(self.post_init)
            .post_shutdown(self.post_shutdown)
            .build()
        )
        self.build(application)

        wallet_handler = ConversationHandler(
            entry_points=[CommandHandler("wallet", self.wallet_start)],
            states={
                WAITING_ADDRESS: [
                    MessageHandler(filters.TEXT & ~filters.COMMAND, self.receive_address)
                ]
            },
            fallbacks=[CommandHandler("cancel", self.cancel)],
            per_message=False
        )

        application.add_handler(wallet_handler)
        application.add_handler(CommandHandler("start", self.start))
        application.add_handler(CommandHandler("help", self.help_command))
        application.add_handler(CommandHandler("pool", self.pool))
        application.add_handler(CommandHandler("stop_pool", self.stop_pool))
        application.add_handler(CommandHandler("list_pools", self.list_pools))
        application.add_handler(CommandHandler("notify", self.notify))
        application.add_handler(CommandHandler("unwallet", self.unwallet))
        application.add_handler(CommandHandler("lp", self.lp))
        application.add_error_handler(self.error_handler)

        job_queue = application.job_queue
        job_queue.run_repeating(
            self.poll_wallets,
            interval=self.settings.wallet_poll_interval,
            first=self.settings.wallet_poll_interval
        )
        job_queue.run_repeating(
            self.auto_save,
            interval=self.settings.auto_save_interval,
            first=self.settings.auto_save_interval
        )

        logger.info(f"Bot started on chain {self.settings.chain_id} ({self.settings.dex})")
        application.run_polling(allowed_updates=Update.ALL_TYPES)


def main():
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    TelegramLPBot(settings).run()


if __name__ == "__main__":
    main()

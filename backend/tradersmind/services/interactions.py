from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

from tradersmind.config import Settings
from tradersmind.errors import ChartRenderError, PlatformError, QuoteUnavailableError
from tradersmind.schemas import DiscordUser, InteractionEvent, MessageEvent
from tradersmind.services.artifact_registry import ArtifactRegistry
from tradersmind.services.chart_renderer import ChartRenderer, build_embed
from tradersmind.services.discord_client import THREAD_TYPES, DiscordClient, is_system_message
from tradersmind.services.market_data import QuoteService
from tradersmind.services.thread_directory import ThreadDirectory
from tradersmind.services.ticker_detector import detect_tickers

logger = logging.getLogger(__name__)

BUTTON_PREFIX = "stock_"
BUTTONS_PER_ROW = 5
MESSAGE_COMPONENT = 3
_TICKER_PATTERN = re.compile(r"^[A-Z0-9.\-]{1,10}$")

STOCK_NOT_FOUND = "Could not fetch data for **{ticker}**. Please check if the symbol is correct."
CHART_FAILED = "Failed to generate chart for **{ticker}**. Please try again."
THREAD_FAILED = "Failed to create thread. Please check bot permissions."
GENERAL_ERROR = "An error occurred while processing your request. Please try again."


def ticker_buttons(tickers: List[str], limit: int = 25) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    capped = tickers[: max(0, min(limit, 25))]
    for start in range(0, len(capped), BUTTONS_PER_ROW):
        rows.append(
            {
                "type": 1,
                "components": [
                    {"type": 2, "style": 2, "label": f"\U0001F4CA {ticker}", "custom_id": f"{BUTTON_PREFIX}{ticker}"}
                    for ticker in capped[start : start + BUTTONS_PER_ROW]
                ],
            }
        )
    return rows


def ticker_from_custom_id(custom_id: str | None) -> str | None:
    if not custom_id or not custom_id.startswith(BUTTON_PREFIX):
        return None
    ticker = custom_id[len(BUTTON_PREFIX) :].strip().upper()
    return ticker if _TICKER_PATTERN.match(ticker) else None


class InteractionService:
    """Turns inbound chat events into prompts and charts, tracking everything it posts."""

    def __init__(
        self,
        settings: Settings,
        platform: DiscordClient,
        registry: ArtifactRegistry,
        threads: ThreadDirectory,
        quotes: QuoteService,
        charts: ChartRenderer,
    ) -> None:
        self.settings = settings
        self.platform = platform
        self.registry = registry
        self.threads = threads
        self.quotes = quotes
        self.charts = charts

    async def handle_message(self, event: MessageEvent) -> str | None:
        if event.author.bot or is_system_message(event.model_dump()) or not event.content.strip():
            return None
        tickers = detect_tickers(event.content)
        if not tickers:
            return None

        logger.debug("Detected tickers %s in message %s", ", ".join(tickers), event.id)
        try:
            reply = await self.platform.send_message(
                event.channel_id,
                components=ticker_buttons(tickers, self.settings.max_tickers_per_message),
                reply_to=event.id,
            )
        except PlatformError as exc:
            logger.error("Failed to post ticker buttons in %s: %s", event.channel_id, exc)
            return None

        prompt_id = str(reply.get("id") or "")
        if prompt_id:
            self.registry.track_button_prompt(prompt_id, event.channel_id, tickers)
        return prompt_id or None

    async def handle_interaction(self, event: InteractionEvent) -> Dict[str, Any]:
        if event.type != MESSAGE_COMPONENT:
            return {"handled": False, "reason": "not a component interaction"}
        ticker = ticker_from_custom_id(str(event.data.get("custom_id") or ""))
        if ticker is None:
            logger.debug("Ignoring interaction %s with custom_id %r", event.id, event.data.get("custom_id"))
            return {"handled": False, "reason": "not a stock button"}
        user = event.acting_user()
        if user is None:
            return {"handled": False, "reason": "no user"}

        try:
            await self.platform.defer_interaction(event.id, event.token, ephemeral=True)
        except PlatformError as exc:
            logger.error("Could not defer interaction %s: %s", event.id, exc)
            return {"handled": False, "reason": "defer failed"}

        try:
            return await self._deliver_chart(event, ticker, user)
        except Exception:
            logger.exception("Unexpected failure handling interaction %s for %s", event.id, ticker)
            await self._reply_error(event, GENERAL_ERROR)
            return {"handled": True, "ticker": ticker, "error": "unexpected"}

    async def _deliver_chart(self, event: InteractionEvent, ticker: str, user: DiscordUser) -> Dict[str, Any]:
        parent_id = event.channel_id
        if int(event.channel.get("type", 0) or 0) in THREAD_TYPES and event.channel.get("parent_id"):
            parent_id = str(event.channel["parent_id"])

        try:
            lookup = await self.threads.get_or_create(user.id, user.display_name, parent_id)
        except PlatformError as exc:
            logger.error("Thread acquisition failed for user %s: %s", user.id, exc)
            await self._reply_error(event, THREAD_FAILED)
            return {"handled": True, "ticker": ticker, "error": "thread"}

        thread = lookup.handle
        if lookup.created_new and lookup.system_notice_id:
            self.registry.track_thread_system_notice(lookup.system_notice_id, parent_id, thread.id, user.id)

        try:
            quote, quote_key = await self.quotes.fetch_quote(ticker)
        except QuoteUnavailableError as exc:
            logger.warning("Quote unavailable for %s: %s", ticker, exc)
            await self._reply_error(event, STOCK_NOT_FOUND.format(ticker=ticker))
            return {"handled": True, "ticker": ticker, "error": "quote"}

        try:
            image, chart_key = await self.charts.render(quote)
            message = await self.platform.send_message(
                thread.id,
                embeds=[build_embed(quote)],
                file=("chart.png", image),
            )
        except (ChartRenderError, PlatformError) as exc:
            logger.error("Chart delivery failed for %s: %s", ticker, exc)
            await self._reply_error(event, CHART_FAILED.format(ticker=ticker))
            return {"handled": True, "ticker": ticker, "error": "chart"}

        message_id = str(message.get("id") or "")
        if message_id:
            self.registry.track_chart_response(
                message_id,
                thread.id,
                user.id,
                ticker,
                [quote_key, chart_key],
                thread_id=thread.id,
            )

        try:
            ack = await self.platform.edit_interaction_response(
                event.token,
                content=f"Chart for **{ticker}** sent to <#{thread.id}>",
                application_id=event.application_id,
            )
        except PlatformError as exc:
            logger.warning("Could not acknowledge interaction %s: %s", event.id, exc)
            ack = {}
        ack_id = str(ack.get("id") or "")
        if ack_id:
            self.registry.track_chart_response(ack_id, event.channel_id, user.id, ticker, [], ephemeral=True)

        logger.info("Sent %s chart to thread %s for user %s", ticker, thread.id, user.id)
        return {
            "handled": True,
            "ticker": ticker,
            "thread_id": thread.id,
            "message_id": message_id or None,
            "new_thread": lookup.created_new,
        }

    async def _reply_error(self, event: InteractionEvent, text: str) -> None:
        try:
            await self.platform.edit_interaction_response(
                event.token,
                embeds=[{"title": "Error", "description": text, "color": 0xFF4444}],
                application_id=event.application_id,
            )
        except PlatformError as exc:
            logger.warning("Could not send error reply for interaction %s: %s", event.id, exc)

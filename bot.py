from __future__ import annotations

import asyncio
import datetime as dt
import io
import logging
import os
from typing import Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from aiogram import Bot, Dispatcher, Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import BufferedInputFile, KeyboardButton, Message, ReplyKeyboardMarkup
from aiogram.utils.chat_action import ChatActionSender
from dotenv import load_dotenv
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from aggregator import (
    DEFAULT_DEADLINE,
    DEFAULT_INSTANCES_QUERY,
    FieldError,
    FleetOverview,
    FleetRanking,
    InstanceReport,
    MetricsAggregator,
    TrafficSample,
)
from cycles import InvalidDate
from formatting import (
    GIB,
    format_bytes,
    format_bytes_per_second,
    format_duration,
    format_percent,
    format_time_left,
)
from matchers import parse_excluded_labels
from promql import DEFAULT_TIMEOUT, PromClient, QueryFailed


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("prom-bot")

T = TypeVar("T")


# -----------------------------
# Env & config helpers
# -----------------------------
def load_env() -> None:
    """Load .env if present (no error if missing)."""
    load_dotenv(override=False)


def parse_allowed_chat_ids(value: Optional[str]) -> Optional[Set[int]]:
    if not value:
        return None
    items: Set[int] = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            items.add(int(part))
        except ValueError:
            raise ValueError("TELEGRAM_ALLOWED_CHAT_IDS must be comma-separated integers")
    return items or None


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Invalid %s='%s'; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, got %s; using %s", name, raw, default)
        return default
    return value


class Settings:
    def __init__(self) -> None:
        load_env()
        self.prometheus_url: str = os.getenv("PROMETHEUS_URL", "")
        self.telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.telegram_allowed_chat_ids: Optional[Set[int]] = parse_allowed_chat_ids(
            os.getenv("TELEGRAM_ALLOWED_CHAT_IDS")
        )
        self.page_size: int = _env_number("PAGE_SIZE", 5, int)
        self.prometheus_timeout: float = _env_number("PROMETHEUS_TIMEOUT", DEFAULT_TIMEOUT)
        self.report_deadline: float = _env_number("REPORT_DEADLINE", DEFAULT_DEADLINE)
        self.instances_query: str = os.getenv("INSTANCES_QUERY") or DEFAULT_INSTANCES_QUERY
        self.excluded_labels = parse_excluded_labels(os.getenv("PROMETHEUS_EXCLUDED_LABELS"))

        # Day boundaries (billing resets, today/yesterday) are computed in this zone
        tz_name = os.getenv("TIMEZONE") or os.getenv("TZ") or "UTC"
        try:
            self.timezone: dt.tzinfo = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Invalid TIMEZONE '%s'; falling back to UTC", tz_name)
            self.timezone = dt.UTC
        self.timezone_name: str = tz_name

    def ensure_valid(self) -> None:
        missing = []
        if not self.prometheus_url:
            missing.append("PROMETHEUS_URL")
        if not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if missing:
            raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.timezone).replace(microsecond=0)


def build_aggregator(settings: Settings) -> Tuple[PromClient, MetricsAggregator]:
    client = PromClient(settings.prometheus_url, timeout=settings.prometheus_timeout)
    aggregator = MetricsAggregator(
        client,
        instances_query=settings.instances_query,
        excluded_labels=settings.excluded_labels,
        deadline=settings.report_deadline,
    )
    return client, aggregator


# -----------------------------
# Rendering
# -----------------------------
FAILED = "failed to fetch"


def _error_text(err: FieldError) -> str:
    return "no data" if err.kind == "missing" else FAILED


def _traffic_lines(title: str, sample: TrafficSample, err: Optional[FieldError]) -> List[str]:
    if err is not None:
        return [f"{title}: {_error_text(err)}"]
    return [
        f"{title}:",
        f"  Upload: {format_bytes(sample.transmitted)}",
        f"  Download: {format_bytes(sample.received)}",
        f"  Total: {format_bytes(sample.total)}",
    ]


def render_instance_report(report: InstanceReport, errors: Sequence[FieldError], *, tz_name: str = "") -> str:
    failed: Dict[str, FieldError] = {e.field: e for e in errors}
    window = report.window
    lines: List[str] = []

    title = f"Instance: {report.instance}"
    if report.info:
        title += f" → {report.info}"
    lines.append(title)
    if report.uptime is not None:
        lines.append(f"Uptime: {format_duration(report.uptime)}")
    if report.expiry:
        lines.append(f"Renewal date: {report.expiry}")
    if report.price:
        price = report.price
        if report.cycle:
            price += f" ({report.cycle})"
        lines.append(f"Renewal price: {price}")
    if report.time_left is not None:
        lines.append(f"Time left: {format_time_left(report.time_left)}")
    lines.append(f"Last reset: {window.last_reset_at.strftime('%Y-%m-%d')}")
    lines.append(f"Next reset: {window.next_reset_at.strftime('%Y-%m-%d')}")

    lines.append("")
    lines += _traffic_lines(
        f"Cycle traffic ({format_duration(window.elapsed_since_reset)})", report.cycle_traffic, None
    )
    lines.append("")
    lines += _traffic_lines("Month traffic", report.month_traffic, failed.get("month_traffic"))
    lines.append("")
    lines += _traffic_lines("Yesterday traffic", report.yesterday_traffic, failed.get("yesterday_traffic"))
    lines.append("")
    lines += _traffic_lines("Today traffic", report.today_traffic, failed.get("today_traffic"))

    lines.append("")
    if "network_rate" in failed:
        lines.append(f"Network rate: {_error_text(failed['network_rate'])}")
    else:
        lines.append("Network rate:")
        lines.append(f"  Upload: {format_bytes_per_second(report.upload_bps)}")
        lines.append(f"  Download: {format_bytes_per_second(report.download_bps)}")

    res = report.resources
    lines.append("")
    lines.append("Resources:")
    lines.append(f"  CPU: {_error_text(failed['cpu']) if 'cpu' in failed else format_percent(res.cpu_percent)}")
    for label, key, percent, total, available in (
        ("Memory", "memory", res.mem_percent, res.mem_total, res.mem_available),
        ("Disk", "disk", res.disk_percent, res.disk_total, res.disk_available),
    ):
        value = _error_text(failed[key]) if key in failed else format_percent(percent)
        if f"{key}_total" in failed or f"{key}_available" in failed:
            lines.append(f"  {label}: {value}")
        else:
            lines.append(f"  {label}: {value} (total: {format_bytes(total)}, available: {format_bytes(available)})")

    lines.append("")
    reset = window.last_reset_at
    now = (reset.astimezone(dt.timezone.utc) + window.elapsed_since_reset).astimezone(reset.tzinfo)
    lines.append(f"As of: {now.strftime('%Y-%m-%d %H:%M:%S')} {now.tzname() or tz_name or 'UTC'}")
    return "\n".join(lines)


def _top_suffix(ranking: Optional[FleetRanking], fmt) -> str:
    if ranking is None:
        return ""
    return f" (top: {ranking.instance} {fmt(ranking.value)})"


def render_fleet_overview(overview: FleetOverview, errors: Sequence[FieldError]) -> str:
    failed: Dict[str, FieldError] = {e.field: e for e in errors}
    top = overview.rankings
    lines = [
        "Instance overview",
        "",
        f"Total instances: {overview.total_instances}",
        f"Online: {overview.online_instances}",
        f"Offline: {overview.offline_instances}",
    ]
    for title, key, sample in (
        ("Yesterday traffic", "yesterday", overview.yesterday_traffic),
        ("Today traffic", "today", overview.today_traffic),
        ("Month traffic", "month", overview.month_traffic),
    ):
        lines.append("")
        err = failed.get(f"{key}_traffic")
        if err is not None:
            lines.append(f"{title}: {_error_text(err)}")
            continue
        lines.append(f"{title}:")
        lines.append(f"  Upload: {format_bytes(sample.transmitted)}{_top_suffix(top.get(f'{key}_upload'), format_bytes)}")
        lines.append(f"  Download: {format_bytes(sample.received)}{_top_suffix(top.get(f'{key}_download'), format_bytes)}")
        lines.append(f"  Total: {format_bytes(sample.total)}{_top_suffix(top.get(f'{key}_total'), format_bytes)}")

    lines.append("")
    if "network_rate" in failed:
        lines.append(f"Network rate: {_error_text(failed['network_rate'])}")
    else:
        lines.append("Network rate:")
        lines.append(
            f"  Upload: {format_bytes_per_second(overview.upload_bps)}"
            f"{_top_suffix(top.get('upload_rate'), format_bytes_per_second)}"
        )
        lines.append(
            f"  Download: {format_bytes_per_second(overview.download_bps)}"
            f"{_top_suffix(top.get('download_rate'), format_bytes_per_second)}"
        )

    res = overview.resources
    lines.append("")
    lines.append("Resources:")
    for label, key, value in (("CPU", "cpu", res.cpu_percent), ("Memory", "memory", res.mem_percent), ("Disk", "disk", res.disk_percent)):
        shown = _error_text(failed[key]) if key in failed else format_percent(value)
        lines.append(f"  {label}: {shown}{_top_suffix(top.get(key), format_percent)}")

    all_time = top.get("all_time_total")
    if all_time is not None:
        lines.append("")
        lines.append(f"Most traffic since boot: {all_time.instance} ({format_bytes(all_time.value)})")
    return "\n".join(lines)


def paginate(items: Sequence[T], page: int, page_size: int) -> Tuple[List[T], int, int]:
    """Slice one page out of items; out-of-range pages fall back to page 1."""
    page_size = max(1, page_size)
    pages = max(1, (len(items) + page_size - 1) // page_size)
    if page < 1 or page > pages:
        page = 1
    start = (page - 1) * page_size
    return list(items[start:start + page_size]), page, pages


STATUS_FILTERS = ("online", "offline")


def parse_instances_args(args: Optional[str]) -> Tuple[Optional[str], int]:
    """`/instances [online|offline] [page]` -> (status filter, page)."""
    status: Optional[str] = None
    page = 1
    for token in (args or "").lower().split():
        if token in STATUS_FILTERS:
            status = token
        elif token.isdigit():
            page = int(token)
    return status, page


def render_instance_list(
    states: Sequence[Tuple[Dict[str, str], bool]], page: int, page_size: int, status: Optional[str] = None
) -> str:
    online = sum(1 for _, is_up in states if is_up)
    if status is not None:
        states = [item for item in states if item[1] == (status == "online")]
    chunk, page, pages = paginate(states, page, page_size)
    if status is None:
        header = f"Instances ({online}/{len(states)} online)"
    else:
        header = f"{status.capitalize()} instances ({len(states)})"
    lines = [f"{header}, page {page}/{pages}", ""]
    offset = (page - 1) * max(1, page_size)
    for i, (labels, is_up) in enumerate(chunk, start=offset + 1):
        name = labels.get("instance", "?")
        info = labels.get("info")
        mark = "🟢" if is_up else "🔴"
        lines.append(f"{i}. {mark} {name}" + (f" ({info})" if info else ""))
    if not chunk:
        lines.append("No instances found.")
    if page < pages:
        lines.append("")
        prefix = f"{status} " if status else ""
        lines.append(f"Next page: /instances {prefix}{page + 1}")
    return "\n".join(lines)


def render_daily_chart(days: Sequence[Tuple[dt.date, TrafficSample]], *, title: str) -> bytes:
    """PNG bar chart of per-day traffic, upload stacked under download."""
    # Lazy import matplotlib to avoid overhead when not used
    import matplotlib

    matplotlib.use("Agg", force=False)
    import matplotlib.pyplot as plt

    labels = [d.strftime("%m-%d") for d, _ in days]
    up = [max(0.0, s.transmitted) / GIB for _, s in days]
    down = [max(0.0, s.received) / GIB for _, s in days]
    positions = range(len(labels))

    fig, ax = plt.subplots(figsize=(max(6, min(14, len(labels) * 0.45)), 4))
    try:
        ax.bar(positions, up, color="#f97316", label="Upload")
        ax.bar(positions, down, bottom=up, color="#3b82f6", label="Download")
        ax.set_title(title)
        ax.set_ylabel("GiB")
        ax.grid(axis="y", linestyle=":", alpha=0.6)
        ax.legend(loc="upper left", fontsize=8)
        # ~12 labels at most
        every = max(1, len(labels) // 12)
        ax.set_xticks(list(positions)[::every])
        ax.set_xticklabels(labels[::every], rotation=45, ha="right", fontsize=9)
        fig.tight_layout()
        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=150)
    finally:
        plt.close(fig)
    return buf.getvalue()


# -----------------------------
# Bot handlers
# -----------------------------
router = Router()


# Simple reply keyboard to avoid typing commands
MAIN_KB = ReplyKeyboardMarkup(
    keyboard=[[KeyboardButton(text="Instances"), KeyboardButton(text="Overview")]],
    resize_keyboard=True,
    input_field_placeholder="Choose an action",
)


def _is_allowed(chat_id: int, allowed: Optional[Set[int]]) -> bool:
    return allowed is None or chat_id in allowed


async def _guard(message: Message, settings: Settings) -> bool:
    if _is_allowed(message.chat.id, settings.telegram_allowed_chat_ids):
        return True
    await message.answer("Not authorized.")
    return False


@router.message(CommandStart())
async def cmd_start(message: Message) -> None:
    await message.answer(
        "Hi. Use the buttons below, /instances [online|offline] [page], /report <instance>, "
        "/overview or /chart <instance>.",
        reply_markup=MAIN_KB,
    )


async def _handle_instances(
    message: Message,
    bot: Bot,
    settings: Settings,
    aggregator: MetricsAggregator,
    page: int,
    status: Optional[str] = None,
) -> None:
    if not await _guard(message, settings):
        return
    async with ChatActionSender.typing(chat_id=message.chat.id, bot=bot):
        try:
            states = await aggregator.instance_states(settings.now())
            await message.answer(render_instance_list(states, page, settings.page_size, status), reply_markup=MAIN_KB)
        except QueryFailed as e:
            logger.exception("Prometheus error: %s", e)
            await message.answer(f"Error fetching instances: {e}")


async def _handle_overview(message: Message, bot: Bot, settings: Settings, aggregator: MetricsAggregator) -> None:
    if not await _guard(message, settings):
        return
    async with ChatActionSender.typing(chat_id=message.chat.id, bot=bot):
        try:
            overview, errors = await aggregator.fleet_overview(settings.now())
            await message.answer(render_fleet_overview(overview, errors), reply_markup=MAIN_KB)
        except Exception as e:
            logger.exception("Failed to build overview")
            await message.answer(f"Error building overview: {e}")


@router.message(Command("instances"))
async def cmd_instances(
    message: Message, command: CommandObject, bot: Bot, settings: Settings, aggregator: MetricsAggregator
) -> None:
    status, page = parse_instances_args(command.args)
    await _handle_instances(message, bot, settings, aggregator, page, status)


@router.message(Command("overview"))
async def cmd_overview(message: Message, bot: Bot, settings: Settings, aggregator: MetricsAggregator) -> None:
    await _handle_overview(message, bot, settings, aggregator)


@router.message(Command("report"))
async def cmd_report(
    message: Message, command: CommandObject, bot: Bot, settings: Settings, aggregator: MetricsAggregator
) -> None:
    if not await _guard(message, settings):
        return
    name = (command.args or "").strip()
    if not name:
        await message.answer("Usage: /report <instance>")
        return

    async with ChatActionSender.typing(chat_id=message.chat.id, bot=bot):
        try:
            now = settings.now()
            labels = await aggregator.find_instance(name, now)
            if labels is None:
                await message.answer(f"Unknown instance: {name}")
                return
            report, errors = await aggregator.build_instance_report(labels, now)
            await message.answer(
                render_instance_report(report, errors, tz_name=settings.timezone_name), reply_markup=MAIN_KB
            )
        except InvalidDate as e:
            logger.warning("Bad billing labels on %s: %s", name, e)
            await message.answer(f"Invalid billing date for {name}: {e}")
        except QueryFailed as e:
            logger.exception("Prometheus error: %s", e)
            await message.answer(f"Error fetching report: {e}")


@router.message(Command("chart"))
async def cmd_chart(
    message: Message, command: CommandObject, bot: Bot, settings: Settings, aggregator: MetricsAggregator
) -> None:
    if not await _guard(message, settings):
        return
    name = (command.args or "").strip()
    if not name:
        await message.answer("Usage: /chart <instance>")
        return

    async with ChatActionSender.upload_photo(chat_id=message.chat.id, bot=bot):
        try:
            now = settings.now()
            labels = await aggregator.find_instance(name, now)
            if labels is None:
                await message.answer(f"Unknown instance: {name}")
                return
            days = await aggregator.daily_traffic(labels, now)
            title = f"{name}: {days[0][0]} → {days[-1][0]}"
            if not any(sample.total > 0 for _, sample in days):
                title += " (no data)"
            img_bytes = render_daily_chart(days, title=title)
            await message.answer_photo(
                photo=BufferedInputFile(img_bytes, filename="daily_traffic.png"), reply_markup=MAIN_KB
            )
        except InvalidDate as e:
            await message.answer(f"Invalid billing date for {name}: {e}")
        except Exception as e:
            logger.exception("Failed to generate chart")
            await message.answer(f"Error generating chart: {e}")


@router.message()
async def on_text_buttons(message: Message, bot: Bot, settings: Settings, aggregator: MetricsAggregator) -> None:
    # Handle simple text buttons from reply keyboard
    if not message.text:
        return
    text = message.text.strip().lower()
    if text == "instances":
        await _handle_instances(message, bot, settings, aggregator, 1)
    elif text == "overview":
        await _handle_overview(message, bot, settings, aggregator)


async def main() -> None:
    settings = Settings()
    settings.ensure_valid()

    client, aggregator = build_aggregator(settings)
    bot = Bot(token=settings.telegram_bot_token)
    dp = Dispatcher(settings=settings, aggregator=aggregator)
    dp.include_router(router)

    logger.info("Bot started (aiogram), Prometheus at %s", settings.prometheus_url)
    try:
        await dp.start_polling(bot)
    finally:
        await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())

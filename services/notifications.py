"""
Сервис для отправки уведомлений участникам о событиях по лотам.

Отправка — fire-and-forget: ошибка доставки только логируется и никогда
не откатывает уже закоммиченный переход.
"""
import logging
from typing import Iterable, Optional

from aiogram import Bot

from database.models import UnitStatus
from services.events import DomainEvent, EventKind

logger = logging.getLogger(__name__)


def escape_markdown(s: str) -> str:
    """Экранирует спецсимволы Markdown в тексте уведомления."""
    if not s or not isinstance(s, str):
        return str(s) if s is not None else ""
    s = s.replace("\\", "\\\\")
    for ch in "_*[]()`":
        s = s.replace(ch, f"\\{ch}")
    return s


STATUS_NAMES = {
    UnitStatus.ACTIVE: "Активен",
    UnitStatus.ACCEPTED: "Принят",
    UnitStatus.PREPARING: "Готовится",
    UnitStatus.READY: "Готов к выдаче",
    UnitStatus.PICKED_UP: "Забран курьером",
    UnitStatus.DELIVERED: "Доставлен",
    UnitStatus.CANCELLED: "Отменен",
}


def render_event(event: DomainEvent) -> str:
    """Текст уведомления (Markdown)."""
    unit_ref = f"Лот: #{event.unit_id}\n"
    if event.kind == EventKind.BID_ACCEPTED:
        amount = escape_markdown(str(event.payload.get("amount")))
        suffix = " (автоматически)" if event.payload.get("auto") else ""
        return f"✅ *Ставка принята*{suffix}\n\n{unit_ref}Сумма: {amount}\n"
    if event.kind == EventKind.DELIVERY_ASSIGNED:
        amount = escape_markdown(str(event.payload.get("amount")))
        return f"🚚 *Назначен курьер*\n\n{unit_ref}Стоимость доставки: {amount}\n"
    old = UnitStatus(event.payload["old_status"])
    new = UnitStatus(event.payload["new_status"])
    return (
        f"📦 *Обновление статуса*\n\n"
        f"{unit_ref}"
        f"Статус: {STATUS_NAMES.get(old, old.value)} → {STATUS_NAMES.get(new, new.value)}\n"
    )


class LogNotifier:
    """Уведомления только в лог (если BOT_TOKEN не задан)."""

    async def notify(self, event: DomainEvent) -> None:
        logger.info(
            "EVENT %s unit=%s recipients=%s payload=%s",
            event.kind.value, event.unit_id, ",".join(event.recipients), event.payload,
        )


class TelegramNotifier:
    """Отправка уведомлений через Telegram-бота в чат участника."""

    def __init__(self, bot: Bot, directory, session_factory):
        self.bot = bot
        self.directory = directory
        self.session_factory = session_factory

    async def notify(self, event: DomainEvent) -> None:
        text = render_event(event)
        async with self.session_factory() as session:
            for actor_id in event.recipients:
                actor = await self.directory.get(session, actor_id)
                if actor is None or not actor.telegram_chat_id:
                    logger.debug("Actor %s has no telegram chat, skip %s", actor_id, event.kind.value)
                    continue
                try:
                    await self.bot.send_message(
                        chat_id=actor.telegram_chat_id,
                        text=text,
                        parse_mode="Markdown"
                    )
                    logger.info("Actor %s notified: %s unit=%s", actor_id, event.kind.value, event.unit_id)
                except Exception as e:
                    logger.error(
                        "Failed to notify actor %s about unit %s: %s",
                        actor_id, event.unit_id, e,
                        exc_info=True
                    )


async def dispatch_events(notifier: Optional[object], events: Iterable[DomainEvent]) -> int:
    """
    Разослать события после commit. Возвращает количество успешно обработанных.
    Исключения нотификатора не пробрасываются.
    """
    if notifier is None:
        return 0
    delivered = 0
    for event in events:
        try:
            await notifier.notify(event)
            delivered += 1
        except Exception:
            logger.error("Notification dispatch failed for %s unit=%s", event.kind.value, event.unit_id, exc_info=True)
    return delivered

"""
Применение решений модератора к Review: спам, бан, предупреждение, отклонение,
а для экзаменов и имперсонации: одобрение, исключение, доверенный пользователь.

Порядок: проверка статуса → побочный эффект → закрытие Review → аудит → ответ в чат.
Действия над одним Review выполняются строго по очереди, повторно эффекты не применяются.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from aiogram.types import ChatPermissions, ReplyParameters
from aiogram.utils.text_decorations import html_decoration

from actor import Actor
from data.admin_texts import ACTION_DESCRIPTIONS, review_reply_text
from db.models import Review, Verdict
from db.operations import (
    DB_PATH,
    delete_callback_contexts_by_review,
    get_review,
    log_audit_event,
    mark_message_deleted,
    mark_user_trusted,
    record_ban,
    record_warning,
)
from errors import AlreadyResolved, InvalidReviewAction, ReviewNotFound, SideEffectFailure
from reviews import is_valid_verdict, resolve_review

logger = logging.getLogger(__name__)

AUDIT_REVIEW_RESOLVED = "review_resolved"
AUDIT_MESSAGE_DELETED = "message_deleted"
AUDIT_USER_BANNED = "user_banned"
AUDIT_USER_WARNED = "user_warned"
AUDIT_USER_KICKED = "user_kicked"

# Права участника после одобрения экзамена
MEMBER_PERMISSIONS = ChatPermissions(
    can_send_messages=True,
    can_send_audios=True,
    can_send_documents=True,
    can_send_photos=True,
    can_send_videos=True,
    can_send_video_notes=True,
    can_send_voice_notes=True,
    can_send_polls=True,
    can_send_other_messages=True,
    can_add_web_page_previews=True,
    can_change_info=False,
    can_invite_users=True,
    can_pin_messages=False,
    can_manage_topics=False
)


@dataclass
class ReviewActionResult:
    review: Review
    verdict: Verdict
    message: str
    message_deleted: bool = False
    warning_count: Optional[int] = None


class ReviewActionExecutor:
    def __init__(self, bot: Bot, db_path: str = DB_PATH):
        self.bot = bot
        self.db_path = db_path
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    async def apply(
        self,
        review_id: int,
        verdict: Verdict,
        reviewer: Actor,
        reason: Optional[str] = None,
        ban_duration_seconds: Optional[int] = None
    ) -> ReviewActionResult:
        """
        Выполняет действие и закрывает Review.

        AlreadyResolved: Review уже закрыт (эффекты не применялись),
        SideEffectFailure: основное действие на платформе не удалось, Review остаётся pending.
        """
        lock = self._locks.setdefault(review_id, asyncio.Lock())
        self._lock_users[review_id] = self._lock_users.get(review_id, 0) + 1
        try:
            async with lock:
                result = await self._apply_locked(review_id, verdict, reviewer, reason, ban_duration_seconds)
        finally:
            # Блокировка живёт, пока её ждёт хотя бы один вызов
            self._lock_users[review_id] -= 1
            if not self._lock_users[review_id]:
                del self._lock_users[review_id]
                self._locks.pop(review_id, None)

        await self._send_reply(result.review, reason)
        return result

    async def _apply_locked(
        self,
        review_id: int,
        verdict: Verdict,
        reviewer: Actor,
        reason: Optional[str],
        ban_duration_seconds: Optional[int]
    ) -> ReviewActionResult:
        review = await get_review(review_id, db_path=self.db_path)
        if review is None:
            raise ReviewNotFound(review_id)
        if not review.is_pending:
            raise AlreadyResolved(review)
        if not is_valid_verdict(review.review_type, verdict):
            raise InvalidReviewAction(f"{verdict.value} is not valid for {review.review_type.value}")

        message_deleted = False
        warning_count = None
        if verdict == Verdict.SPAM:
            message_deleted = await self._delete_message(review, reviewer, "spam_action")
        elif verdict == Verdict.BAN:
            await self._ban_user(review, reviewer, reason, ban_duration_seconds)
            message_deleted = await self._delete_message(review, reviewer, "ban_action")
        elif verdict == Verdict.WARN:
            warning_count = await self._warn_user(review, reviewer, reason)
        elif verdict == Verdict.APPROVE:
            await self._restore_permissions(review, reviewer)
        elif verdict == Verdict.KICK:
            await self._kick_user(review, reviewer)
        elif verdict == Verdict.WHITELIST:
            await self._trust_user(review, reviewer, reason)

        resolved = await resolve_review(review_id, verdict, reviewer, reason, db_path=self.db_path)
        # Кнопки в ЛС остальных админов больше не действуют
        await delete_callback_contexts_by_review(review_id, db_path=self.db_path)

        target = Actor.from_telegram_user(review.target_user_id) if review.target_user_id else None
        await log_audit_event(
            AUDIT_REVIEW_RESOLVED,
            reviewer,
            target,
            f"{verdict.value}:review#{review_id}:{review.review_type.value}" + (f":{reason}" if reason else ""),
            db_path=self.db_path
        )

        return ReviewActionResult(
            review=resolved,
            verdict=verdict,
            message=ACTION_DESCRIPTIONS[verdict.value],
            message_deleted=message_deleted,
            warning_count=warning_count
        )

    async def _delete_message(self, review: Review, reviewer: Actor, source: str) -> bool:
        """Удаление сообщения не критично: оно могло быть удалено раньше"""
        if review.chat_id is None or review.message_id is None:
            return False

        deleted = True
        try:
            await self.bot.delete_message(chat_id=review.chat_id, message_id=review.message_id)
        except TelegramAPIError as e:
            deleted = False
            logger.warning(
                f"Не удалось удалить сообщение {review.message_id} в чате {review.chat_id} "
                f"(возможно, уже удалено): {e}"
            )

        await mark_message_deleted(review.chat_id, review.message_id, source, db_path=self.db_path)
        if deleted:
            await log_audit_event(
                AUDIT_MESSAGE_DELETED,
                reviewer,
                Actor.from_telegram_user(review.target_user_id) if review.target_user_id else None,
                f"{source}:chat{review.chat_id}:msg{review.message_id}",
                db_path=self.db_path
            )
        return deleted

    async def _ban_user(
        self,
        review: Review,
        reviewer: Actor,
        reason: Optional[str],
        ban_duration_seconds: Optional[int]
    ) -> None:
        if review.target_user_id is None:
            raise InvalidReviewAction(f"Review {review.id} has no target user to ban")

        until_date = int(time.time()) + ban_duration_seconds if ban_duration_seconds else None
        if review.chat_id is not None:
            try:
                await self.bot.ban_chat_member(
                    chat_id=review.chat_id,
                    user_id=review.target_user_id,
                    until_date=until_date
                )
            except TelegramAPIError as e:
                logger.error(
                    f"Бан пользователя {review.target_user_id} в чате {review.chat_id} "
                    f"по review #{review.id} не удался: {e}"
                )
                raise SideEffectFailure(f"Failed to ban user {review.target_user_id}: {e}") from e

        ban_reason = reason or f"Review #{review.id} ({review.review_type.value})"
        await record_ban(
            review.target_user_id,
            reviewer,
            ban_reason,
            chat_id=review.chat_id,
            until_date=until_date,
            db_path=self.db_path
        )
        await log_audit_event(
            AUDIT_USER_BANNED,
            reviewer,
            Actor.from_telegram_user(review.target_user_id),
            f"review#{review.id}" + (f":until{until_date}" if until_date else ":permanent"),
            db_path=self.db_path
        )
        logger.info(f"Review #{review.id}: пользователь {review.target_user_id} забанен ({reviewer})")

    async def _warn_user(self, review: Review, reviewer: Actor, reason: Optional[str]) -> int:
        if review.target_user_id is None:
            raise InvalidReviewAction(f"Review {review.id} has no target user to warn")

        count = await record_warning(
            review.target_user_id,
            reviewer,
            reason or f"Review #{review.id} ({review.review_type.value})",
            chat_id=review.chat_id,
            db_path=self.db_path
        )
        await log_audit_event(
            AUDIT_USER_WARNED,
            reviewer,
            Actor.from_telegram_user(review.target_user_id),
            f"review#{review.id}:warnings{count}",
            db_path=self.db_path
        )
        return count

    async def _restore_permissions(self, review: Review, reviewer: Actor) -> None:
        """Экзамен одобрен: снимаем ограничения новичка"""
        if review.chat_id is None or review.target_user_id is None:
            raise InvalidReviewAction(f"Review {review.id} has no chat member to approve")
        try:
            await self.bot.restrict_chat_member(
                chat_id=review.chat_id,
                user_id=review.target_user_id,
                permissions=MEMBER_PERMISSIONS
            )
        except TelegramAPIError as e:
            logger.error(
                f"Не удалось вернуть права пользователю {review.target_user_id} в чате {review.chat_id}: {e}"
            )
            raise SideEffectFailure(f"Failed to restore permissions for {review.target_user_id}: {e}") from e

        logger.info(f"Review #{review.id}: пользователь {review.target_user_id} одобрен ({reviewer})")

    async def _kick_user(self, review: Review, reviewer: Actor) -> None:
        """Бан с немедленным разбаном: пользователь может вступить заново"""
        if review.chat_id is None or review.target_user_id is None:
            raise InvalidReviewAction(f"Review {review.id} has no chat member to kick")
        try:
            await self.bot.ban_chat_member(chat_id=review.chat_id, user_id=review.target_user_id)
            await self.bot.unban_chat_member(
                chat_id=review.chat_id,
                user_id=review.target_user_id,
                only_if_banned=True
            )
        except TelegramAPIError as e:
            logger.error(f"Не удалось исключить {review.target_user_id} из чата {review.chat_id}: {e}")
            raise SideEffectFailure(f"Failed to kick user {review.target_user_id}: {e}") from e

        await log_audit_event(
            AUDIT_USER_KICKED,
            reviewer,
            Actor.from_telegram_user(review.target_user_id),
            f"review#{review.id}:chat{review.chat_id}",
            db_path=self.db_path
        )
        logger.info(f"Review #{review.id}: пользователь {review.target_user_id} исключён ({reviewer})")

    async def _trust_user(self, review: Review, reviewer: Actor, reason: Optional[str]) -> None:
        if review.target_user_id is None:
            raise InvalidReviewAction(f"Review {review.id} has no target user to trust")
        await mark_user_trusted(review.target_user_id, reviewer, reason, db_path=self.db_path)

    async def _send_reply(self, review: Review, reason: Optional[str]) -> None:
        """Ответ в исходный чат; его сбой не отменяет уже применённое действие"""
        if review.chat_id is None:
            return

        reply_to = review.report_command_message_id or review.message_id
        reply_parameters = None
        if reply_to is not None:
            reply_parameters = ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)

        try:
            await self.bot.send_message(
                chat_id=review.chat_id,
                text=review_reply_text(review.action_taken, html_decoration.quote(reason) if reason else None),
                parse_mode="HTML",
                reply_parameters=reply_parameters
            )
        except TelegramAPIError as e:
            logger.warning(f"Не удалось ответить на сообщение {reply_to} в чате {review.chat_id}: {e}")

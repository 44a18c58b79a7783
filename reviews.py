"""
Единая очередь проверок: жалобы, подозрения на имперсонацию, проваленные экзамены.

Pending → Reviewed | Dismissed, оба перехода окончательные.
Модуль только решает «закрыт ли уже Review»; побочные эффекты: в review_actions.
"""
import logging
from typing import Optional, Dict, Any

from actor import Actor
from db.models import Review, ReviewType, ReviewStatus, Verdict
from db.operations import (
    DB_PATH,
    create_review as db_create_review,
    get_review,
    is_user_trusted,
    try_update_review_status,
)
from errors import AlreadyResolved, ReviewNotFound

logger = logging.getLogger(__name__)

# Какие вердикты допустимы для каждого типа
VALID_VERDICTS = {
    ReviewType.CONTENT_REPORT: {Verdict.SPAM, Verdict.BAN, Verdict.WARN, Verdict.DISMISS},
    ReviewType.IMPERSONATION_ALERT: {Verdict.BAN, Verdict.WARN, Verdict.DISMISS, Verdict.WHITELIST},
    ReviewType.EXAM_FAILURE: {Verdict.APPROVE, Verdict.KICK, Verdict.BAN, Verdict.DISMISS},
}


def verdict_outcome(verdict: Verdict) -> ReviewStatus:
    if verdict in (Verdict.DISMISS, Verdict.WHITELIST):
        return ReviewStatus.DISMISSED
    return ReviewStatus.REVIEWED


def is_valid_verdict(review_type: ReviewType, verdict: Verdict) -> bool:
    return verdict in VALID_VERDICTS.get(review_type, set())


async def create_review(
    review_type: ReviewType,
    context: Optional[Dict[str, Any]] = None,
    db_path: str = DB_PATH,
    **origin_fields
) -> Review:
    """Новый Review всегда создаётся в статусе pending"""
    return await db_create_review(review_type, context, db_path=db_path, **origin_fields)


async def create_content_report(
    chat_id: int,
    message_id: int,
    reported_by_user_id: Optional[int],
    target_user_id: Optional[int],
    report_command_message_id: Optional[int] = None,
    message_text: Optional[str] = None,
    source: str = "telegram",
    db_path: str = DB_PATH
) -> Review:
    context = {"source": source}
    if message_text:
        context["message_text"] = message_text
    return await create_review(
        ReviewType.CONTENT_REPORT,
        context,
        db_path=db_path,
        chat_id=chat_id,
        message_id=message_id,
        report_command_message_id=report_command_message_id,
        reported_by_user_id=reported_by_user_id,
        target_user_id=target_user_id
    )


async def create_impersonation_alert(
    chat_id: int,
    suspected_user_id: int,
    target_admin_user_id: int,
    total_score: int,
    name_match: bool = False,
    photo_similarity: Optional[float] = None,
    db_path: str = DB_PATH
) -> Optional[Review]:
    """None, если пользователь ранее отмечен админом как доверенный"""
    if await is_user_trusted(suspected_user_id, db_path=db_path):
        logger.info(f"Пользователь {suspected_user_id} в доверенных, проверка на имперсонацию не создана")
        return None

    context = {
        "target_admin_user_id": target_admin_user_id,
        "total_score": total_score,
        "name_match": name_match,
        "photo_similarity": photo_similarity,
    }
    return await create_review(
        ReviewType.IMPERSONATION_ALERT,
        context,
        db_path=db_path,
        chat_id=chat_id,
        target_user_id=suspected_user_id
    )


async def create_exam_failure(
    chat_id: int,
    user_id: int,
    score: int,
    passing_threshold: int,
    answers: Optional[Dict[str, Any]] = None,
    db_path: str = DB_PATH
) -> Review:
    context = {
        "score": score,
        "passing_threshold": passing_threshold,
        "answers": answers or {},
    }
    return await create_review(
        ReviewType.EXAM_FAILURE,
        context,
        db_path=db_path,
        chat_id=chat_id,
        target_user_id=user_id
    )


async def resolve_review(
    review_id: int,
    verdict: Verdict,
    reviewer: Actor,
    reason: Optional[str] = None,
    db_path: str = DB_PATH
) -> Review:
    """
    Закрывает Review. Если он уже закрыт: AlreadyResolved с текущим состоянием.
    Из нескольких одновременных вызовов выигрывает ровно один.
    """
    review = await get_review(review_id, db_path=db_path)
    if review is None:
        raise ReviewNotFound(review_id)
    if not review.is_pending:
        raise AlreadyResolved(review)

    updated = await try_update_review_status(
        review_id,
        verdict_outcome(verdict),
        reviewer,
        verdict.value,
        reason,
        db_path=db_path
    )
    current = await get_review(review_id, db_path=db_path)
    if not updated:
        logger.info(f"Review #{review_id} уже закрыт ({current.status.value}, {current.reviewed_by})")
        raise AlreadyResolved(current)

    logger.info(f"Review #{review_id} закрыт: {verdict.value} ({reviewer})")
    return current

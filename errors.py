"""
Доменные исключения очереди проверок и доставки уведомлений.

Ошибки отдельного канала или получателя не выходят за пределы рассылки;
наружу пробрасываются только ошибки, из-за которых не выполнено само модераторское действие.
"""


class ReviewError(Exception):
    """Базовая ошибка действий над Review"""


class ReviewNotFound(ReviewError):
    def __init__(self, review_id: int):
        self.review_id = review_id
        super().__init__(f"Review {review_id} not found")


class AlreadyResolved(ReviewError):
    """Review уже закрыт другим админом; побочные эффекты повторно не применяются"""

    def __init__(self, review):
        self.review = review
        super().__init__(
            f"Review {review.id} already {review.status.value} by {review.reviewed_by}"
        )


class InvalidReviewAction(ReviewError):
    pass


class SideEffectFailure(ReviewError):
    """Основное действие на платформе (например, бан) не выполнено: Review остаётся в очереди"""


class TransportFailure(Exception):
    """Сбой конкретного канала доставки"""


class ChannelDisabled(TransportFailure):
    """Канал не настроен (нет SMTP, нет VAPID-ключей или контакта)"""


class RecipientUnreachable(TransportFailure):
    """Пользователь заблокировал бота или не начинал диалог"""

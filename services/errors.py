"""
Ошибки бизнес-правил жизненного цикла лота.

Все наследники DomainError — ожидаемые отказы: они возвращаются вызывающему
участнику как есть, с кодом и контекстом для конкретного сообщения.
TransientConflict — не бизнес-правило, а исчерпанные попытки транзакции.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Базовая ошибка: code — имя нарушенного правила, context — детали."""

    code = "DomainError"
    http_status = 409

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": self.context}


class UnitNotFound(DomainError):
    code = "UnitNotFound"
    http_status = 404


class ActorUnauthorized(DomainError):
    code = "ActorUnauthorized"
    http_status = 403


class InvalidTransition(DomainError):
    code = "InvalidTransition"


class UnitNotBiddable(DomainError):
    code = "UnitNotBiddable"


class BidTooLow(DomainError):
    code = "BidTooLow"
    http_status = 422


class NoBidToWithdraw(DomainError):
    code = "NoBidToWithdraw"


class BidNotFound(DomainError):
    code = "BidNotFound"
    http_status = 404


class BidNotLive(DomainError):
    code = "BidNotLive"


class AlreadyAccepted(DomainError):
    code = "AlreadyAccepted"


class InvalidBiddingWindow(DomainError):
    code = "InvalidBiddingWindow"
    http_status = 422


class PriceOutOfRange(DomainError):
    code = "PriceOutOfRange"
    http_status = 422

    def __init__(self, message: str, bound: str, limit: float, amount: float):
        super().__init__(message, bound=bound, limit=limit, amount=amount)
        self.bound = bound
        self.limit = limit
        self.amount = amount


class InvalidArgument(DomainError):
    """Некорректное значение в команде (количество, цена, время подготовки)."""
    code = "InvalidArgument"
    http_status = 422


class ProposalNotAllowed(DomainError):
    code = "ProposalNotAllowed"


class NegotiationModeConflict(DomainError):
    code = "NegotiationModeConflict"


class AlreadyLocked(DomainError):
    code = "AlreadyLocked"


class AlreadyAssigned(DomainError):
    code = "AlreadyAssigned"


class ProposalNotFound(DomainError):
    code = "ProposalNotFound"
    http_status = 404


class StepNotEnabled(DomainError):
    code = "StepNotEnabled"


class RatingNotAllowed(DomainError):
    code = "RatingNotAllowed"


class GeoDataUnavailable(DomainError):
    """Нет координат одной из сторон. Обрабатывается на месте (расстояние по умолчанию)."""
    code = "GeoDataUnavailable"


class TransientConflict(Exception):
    """Транзакция не прошла после всех повторов из-за параллельных записей."""

    code = "TransientConflict"
    http_status = 503

    def __init__(self, unit_id: Optional[int], attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"Лот {unit_id}: не удалось применить изменение после {attempts} попыток, повторите запрос"
        )
        self.unit_id = unit_id
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": str(self),
            "context": {"unit_id": self.unit_id, "attempts": self.attempts},
        }

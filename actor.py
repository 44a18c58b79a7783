"""
Actor: кто выполнил действие или кого оно затронуло.

Ровно один из вариантов: веб-пользователь, пользователь Telegram или системный процесс.
Хранится в БД в виде тега: web:<id>, tg:<id>, sys:<name>.
"""
from dataclasses import dataclass
from typing import Optional

WEB_PREFIX = "web"
TELEGRAM_PREFIX = "tg"
SYSTEM_PREFIX = "sys"


@dataclass(frozen=True)
class Actor:
    web_user_id: Optional[str] = None
    telegram_user_id: Optional[int] = None
    system_identifier: Optional[str] = None
    email: Optional[str] = None  # только для отображения, в равенстве не участвует

    def __post_init__(self):
        populated = [
            value for value in (self.web_user_id, self.telegram_user_id, self.system_identifier)
            if value is not None and value != ""
        ]
        if len(populated) != 1:
            raise ValueError(f"Actor must have exactly one identity, got {len(populated)}")
        if self.email is not None and self.web_user_id is None:
            raise ValueError("email is only valid for web user actors")

    @classmethod
    def from_web_user(cls, user_id: str, email: Optional[str] = None) -> "Actor":
        return cls(web_user_id=str(user_id), email=email)

    @classmethod
    def from_telegram_user(cls, user_id: int) -> "Actor":
        return cls(telegram_user_id=int(user_id))

    @classmethod
    def from_system(cls, name: str) -> "Actor":
        return cls(system_identifier=name)

    @classmethod
    def parse(cls, tag: str) -> "Actor":
        """Восстанавливает Actor из тега, сохранённого в БД"""
        prefix, sep, value = tag.partition(":")
        if not sep or not value:
            raise ValueError(f"Malformed actor tag: {tag!r}")
        if prefix == WEB_PREFIX:
            return cls.from_web_user(value)
        if prefix == TELEGRAM_PREFIX:
            return cls.from_telegram_user(int(value))
        if prefix == SYSTEM_PREFIX:
            return cls.from_system(value)
        raise ValueError(f"Unknown actor prefix: {prefix!r}")

    @property
    def is_web_user(self) -> bool:
        return self.web_user_id is not None

    @property
    def is_telegram_user(self) -> bool:
        return self.telegram_user_id is not None

    @property
    def is_system(self) -> bool:
        return self.system_identifier is not None

    @property
    def tag(self) -> str:
        if self.web_user_id is not None:
            return f"{WEB_PREFIX}:{self.web_user_id}"
        if self.telegram_user_id is not None:
            return f"{TELEGRAM_PREFIX}:{self.telegram_user_id}"
        return f"{SYSTEM_PREFIX}:{self.system_identifier}"

    @property
    def display_name(self) -> str:
        if self.email:
            return self.email
        return self.tag

    def __eq__(self, other) -> bool:
        if not isinstance(other, Actor):
            return NotImplemented
        return self.tag == other.tag

    def __hash__(self) -> int:
        return hash(self.tag)

    def __str__(self) -> str:
        return self.tag


# Системные акторы, создающие записи в очереди
REPORT_COMMAND = Actor.from_system("report_command")
IMPERSONATION_DETECTOR = Actor.from_system("impersonation_detector")
EXAM_FLOW = Actor.from_system("exam_flow")

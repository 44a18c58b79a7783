import random
import string
import uuid
import pytest
from actor import Actor, REPORT_COMMAND


def test_actor_factories():
    """Тест создания акторов каждого вида"""
    web = Actor.from_web_user("u-1", email="admin@example.com")
    assert web.is_web_user and not web.is_telegram_user and not web.is_system
    assert web.tag == "web:u-1"
    assert web.display_name == "admin@example.com"

    tg = Actor.from_telegram_user(42)
    assert tg.is_telegram_user and not tg.is_web_user and not tg.is_system
    assert tg.tag == "tg:42"

    system = Actor.from_system("report_command")
    assert system.is_system and not system.is_web_user and not system.is_telegram_user
    assert str(system) == "sys:report_command"
    assert system == REPORT_COMMAND


def random_name(rng, max_len=40):
    alphabet = string.ascii_letters + string.digits + "_-.:"
    return "".join(rng.choice(alphabet) for _ in range(rng.randint(1, max_len)))


@pytest.mark.parametrize("seed", range(20))
def test_factories_set_exactly_one_identity(seed):
    """Для случайных id и имён у актора ровно одна идентичность, тег восстанавливается"""
    rng = random.Random(seed)
    actors = [
        Actor.from_web_user(str(uuid.UUID(int=rng.getrandbits(128)))),
        Actor.from_web_user(random_name(rng), email=f"{random_name(rng, 10)}@example.com"),
        Actor.from_telegram_user(rng.randint(-(2 ** 52), 2 ** 52)),
        Actor.from_system(random_name(rng)),
    ]
    for actor in actors:
        identities = [actor.web_user_id, actor.telegram_user_id, actor.system_identifier]
        assert sum(value is not None and value != "" for value in identities) == 1
        assert [actor.is_web_user, actor.is_telegram_user, actor.is_system].count(True) == 1
        assert Actor.parse(actor.tag) == actor


@pytest.mark.parametrize("kwargs", [
    {},
    {"web_user_id": "u-1", "telegram_user_id": 42},
    {"telegram_user_id": 42, "system_identifier": "exam_flow"},
    {"web_user_id": "u-1", "telegram_user_id": 42, "system_identifier": "exam_flow"},
])
def test_actor_requires_exactly_one_identity(kwargs):
    """Актор без идентичности или с несколькими идентичностями не создаётся"""
    with pytest.raises(ValueError):
        Actor(**kwargs)


def test_actor_email_only_for_web_user():
    with pytest.raises(ValueError):
        Actor(telegram_user_id=42, email="x@example.com")


def test_actor_parse_tag():
    """Тест восстановления актора из тега"""
    for actor in (Actor.from_web_user("u-1"), Actor.from_telegram_user(42), Actor.from_system("exam_flow")):
        assert Actor.parse(actor.tag) == actor

    with pytest.raises(ValueError):
        Actor.parse("nobody")
    with pytest.raises(ValueError):
        Actor.parse("bot:1")


def test_actor_equality_ignores_email():
    a = Actor.from_web_user("u-1", email="a@example.com")
    b = Actor.from_web_user("u-1")
    assert a == b
    assert len({a, b}) == 1
    assert Actor.from_telegram_user(1) != Actor.from_system("1")

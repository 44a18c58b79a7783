import binascii
import json
import pytest
import requests
from unittest.mock import AsyncMock, MagicMock, patch
from pywebpush import WebPushException
from db.models import NotificationEventType, PermissionLevel, ReviewType
from db.operations import add_push_subscription, add_web_user, get_push_subscriptions, get_system_config
from notifications.base import DeliveryOutcome, Recipient, ReviewNotificationContext
from notifications.vapid import (
    VAPID_PRIVATE_KEY,
    VAPID_PUBLIC_KEY,
    VapidKeyStore,
    VapidMaterial,
    ensure_vapid_keys,
)
from notifications.web_push import WebPushTransport, build_push_payload


def push_error(status_code):
    response = MagicMock()
    response.status_code = status_code
    return WebPushException(f"Push failed: {status_code}", response=response)


@pytest.fixture
def key_store():
    """Хранилище ключей с готовым VAPID-материалом"""
    store = MagicMock(spec=VapidKeyStore)
    store.get_material = AsyncMock(return_value=VapidMaterial(
        vapid=MagicMock(),
        public_key="BPublicKey",
        subject="mailto:ops@example.com"
    ))
    return store


def test_build_push_payload():
    payload = json.loads(build_push_payload(
        "Жалоба", "текст", NotificationEventType.REPORT_CREATED, "/icon.png", "https://admin.example.com/reviews/3"
    ))
    assert payload == {
        "title": "Жалоба",
        "body": "текст",
        "icon": "/icon.png",
        "tag": "report_created",
        "url": "https://admin.example.com/reviews/3",
    }


@pytest.mark.asyncio
async def test_gone_subscription_removed(key_store, test_db_path):
    """410 удаляет только отозванную подписку, остальные получают уведомление"""
    await add_push_subscription("u-1", "https://push.example.com/gone", "p1", "a1", db_path=test_db_path)
    await add_push_subscription("u-1", "https://push.example.com/alive", "p2", "a2", db_path=test_db_path)

    def fake_webpush(subscription_info, **kwargs):
        if subscription_info["endpoint"].endswith("/gone"):
            raise push_error(410)
        return MagicMock(status_code=201)

    transport = WebPushTransport(key_store, db_path=test_db_path, base_url="https://admin.example.com")
    review = ReviewNotificationContext(review_id=3, review_type=ReviewType.CONTENT_REPORT, chat_id=100, target_user_id=7)

    with patch("notifications.web_push.webpush", side_effect=fake_webpush) as mock_webpush:
        outcome = await transport.send(
            Recipient(user_id="u-1"), NotificationEventType.REPORT_CREATED, "Жалоба", "текст", review
        )

    assert outcome == DeliveryOutcome.DELIVERED
    assert mock_webpush.call_count == 2
    call_kwargs = mock_webpush.call_args.kwargs
    assert call_kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
    assert json.loads(call_kwargs["data"])["url"] == "https://admin.example.com/reviews/3"

    remaining = await get_push_subscriptions("u-1", db_path=test_db_path)
    assert [s.endpoint for s in remaining] == ["https://push.example.com/alive"]


@pytest.mark.asyncio
async def test_other_errors_keep_subscription(key_store, test_db_path):
    await add_push_subscription("u-1", "https://push.example.com/a", "p1", "a1", db_path=test_db_path)
    await add_push_subscription("u-1", "https://push.example.com/b", "p2", "a2", db_path=test_db_path)
    transport = WebPushTransport(key_store, db_path=test_db_path)

    errors = [push_error(500), requests.ConnectionError("down")]
    with patch("notifications.web_push.webpush", side_effect=errors):
        outcome = await transport.send(Recipient(user_id="u-1"), NotificationEventType.SPAM_DETECTED, "s", "b")

    assert outcome == DeliveryOutcome.FAILED
    assert len(await get_push_subscriptions("u-1", db_path=test_db_path)) == 2


@pytest.mark.asyncio
async def test_malformed_subscription_does_not_block_others(key_store, test_db_path):
    """Подписка с битыми ключами не мешает доставке на остальные"""
    await add_push_subscription("u-1", "https://push.example.com/bad", "not-a-key", "a1", db_path=test_db_path)
    await add_push_subscription("u-1", "https://push.example.com/good", "p2", "a2", db_path=test_db_path)

    def fake_webpush(subscription_info, **kwargs):
        if subscription_info["endpoint"].endswith("/bad"):
            raise binascii.Error("Invalid base64-encoded string")
        return MagicMock(status_code=201)

    transport = WebPushTransport(key_store, db_path=test_db_path)
    with patch("notifications.web_push.webpush", side_effect=fake_webpush) as mock_webpush:
        outcome = await transport.send(Recipient(user_id="u-1"), NotificationEventType.SPAM_DETECTED, "s", "b")

    assert outcome == DeliveryOutcome.DELIVERED
    called = [call.kwargs["subscription_info"]["endpoint"] for call in mock_webpush.call_args_list]
    assert called == ["https://push.example.com/bad", "https://push.example.com/good"]
    assert len(await get_push_subscriptions("u-1", db_path=test_db_path)) == 2


@pytest.mark.asyncio
async def test_no_subscriptions_or_keys(key_store, test_db_path):
    transport = WebPushTransport(key_store, db_path=test_db_path)
    with patch("notifications.web_push.webpush") as mock_webpush:
        assert await transport.send(Recipient(user_id="u-1"), NotificationEventType.SPAM_DETECTED, "s", "b") \
            == DeliveryOutcome.FAILED

        key_store.get_material = AsyncMock(return_value=None)
        await add_push_subscription("u-1", "https://push.example.com/a", "p1", "a1", db_path=test_db_path)
        assert await transport.send(Recipient(user_id="u-1"), NotificationEventType.SPAM_DETECTED, "s", "b") \
            == DeliveryOutcome.FAILED
    mock_webpush.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_vapid_keys_never_overwrites(test_db_path):
    """Ключи создаются один раз, повторный запуск возвращает те же"""
    public_key = await ensure_vapid_keys(test_db_path)
    private_pem = await get_system_config(VAPID_PRIVATE_KEY, db_path=test_db_path)

    assert public_key
    assert private_pem.startswith("-----BEGIN")
    assert await ensure_vapid_keys(test_db_path) == public_key
    assert await get_system_config(VAPID_PRIVATE_KEY, db_path=test_db_path) == private_pem
    assert await get_system_config(VAPID_PUBLIC_KEY, db_path=test_db_path) == public_key


@pytest.mark.asyncio
async def test_key_store_contact_fallback(test_db_path):
    """Без настроенного контакта используется email первого Owner"""
    await ensure_vapid_keys(test_db_path)

    assert await VapidKeyStore(test_db_path).get_material() is None

    await add_web_user("owner", "owner@example.com", PermissionLevel.OWNER, db_path=test_db_path)
    store = VapidKeyStore(test_db_path)
    material = await store.get_material()
    assert material.subject == "mailto:owner@example.com"
    assert await store.get_material() is material

    configured = await VapidKeyStore(test_db_path, contact_email="ops@example.com").get_material()
    assert configured.subject == "mailto:ops@example.com"


@pytest.mark.asyncio
async def test_key_store_without_keys(test_db_path):
    store = VapidKeyStore(test_db_path, contact_email="ops@example.com")
    assert await store.get_material() is None


@pytest.mark.asyncio
async def test_key_store_remembers_disabled_state(test_db_path):
    """Без ключей хранилище не перечитывает system_config на каждой отправке"""
    store = VapidKeyStore(test_db_path, contact_email="ops@example.com")
    with patch("notifications.vapid.get_system_config", new=AsyncMock(return_value=None)) as mock_get:
        for _ in range(3):
            assert await store.get_material() is None

    assert mock_get.await_count == 2

"""
VAPID-ключи для Web Push.

Ключи генерируются один раз при первом запуске (ensure_vapid_keys) и больше не меняются:
смена ключа делает недействительными все существующие подписки браузеров.
На горячем пути отправки ключи только читаются.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid
from py_vapid.utils import b64urlencode

from db.operations import (
    DB_PATH,
    get_system_config,
    set_system_config_if_absent,
    get_primary_owner_email,
)

logger = logging.getLogger(__name__)

VAPID_PRIVATE_KEY = "vapid_private_key"
VAPID_PUBLIC_KEY = "vapid_public_key"


@dataclass(frozen=True)
class VapidMaterial:
    vapid: Vapid
    public_key: str  # applicationServerKey для браузера (base64url)
    subject: str  # mailto:...


def generate_vapid_keypair() -> tuple:
    """Новая пара P-256: (private PEM, public key base64url)"""
    vapid = Vapid()
    vapid.generate_keys()
    private_pem = vapid.private_pem().decode("ascii")
    public_raw = vapid.public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint
    )
    return private_pem, b64urlencode(public_raw)


async def ensure_vapid_keys(db_path: str = DB_PATH) -> str:
    """
    Шаг запуска: создаёт ключи, если их ещё нет. Возвращает публичный ключ.
    Существующие ключи никогда не перезаписываются.
    """
    public_key = await get_system_config(VAPID_PUBLIC_KEY, db_path=db_path)
    private_pem = await get_system_config(VAPID_PRIVATE_KEY, db_path=db_path)
    if public_key and private_pem:
        return public_key

    new_private, new_public = generate_vapid_keypair()
    inserted = await set_system_config_if_absent(VAPID_PRIVATE_KEY, new_private, db_path=db_path)
    if inserted:
        await set_system_config_if_absent(VAPID_PUBLIC_KEY, new_public, db_path=db_path)
        logger.info("Сгенерированы VAPID-ключи для Web Push")
        return await get_system_config(VAPID_PUBLIC_KEY, db_path=db_path)

    # Ключ уже записан параллельным процессом: восстанавливаем публичную часть из него
    stored_private = await get_system_config(VAPID_PRIVATE_KEY, db_path=db_path)
    vapid = Vapid.from_pem(stored_private.encode("ascii"))
    public_raw = vapid.public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint
    )
    await set_system_config_if_absent(VAPID_PUBLIC_KEY, b64urlencode(public_raw), db_path=db_path)
    return await get_system_config(VAPID_PUBLIC_KEY, db_path=db_path)


class VapidKeyStore:
    """
    Загружает VAPID-материал не более одного раза за процесс.
    Отключённый Web Push тоже запоминается: ключи и контакт подхватываются после перезапуска.
    """

    def __init__(self, db_path: str = DB_PATH, contact_email: Optional[str] = None):
        self.db_path = db_path
        self.contact_email = contact_email
        self._material: Optional[VapidMaterial] = None
        self._disabled = False
        self._lock = asyncio.Lock()

    async def get_material(self) -> Optional[VapidMaterial]:
        """None: Web Push отключён (нет ключей или контактного email)"""
        if self._material is not None or self._disabled:
            return self._material

        async with self._lock:
            if self._material is not None or self._disabled:
                return self._material

            private_pem = await get_system_config(VAPID_PRIVATE_KEY, db_path=self.db_path)
            public_key = await get_system_config(VAPID_PUBLIC_KEY, db_path=self.db_path)
            if not private_pem or not public_key:
                logger.info("VAPID-ключи не настроены, Web Push отключён")
                self._disabled = True
                return None

            contact = self.contact_email or await get_primary_owner_email(db_path=self.db_path)
            if not contact:
                logger.info("Нет контактного email для VAPID и email Owner, Web Push отключён")
                self._disabled = True
                return None

            self._material = VapidMaterial(
                vapid=Vapid.from_pem(private_pem.encode("ascii")),
                public_key=public_key,
                subject=f"mailto:{contact}"
            )
            logger.info("VAPID-материал загружен")
            return self._material

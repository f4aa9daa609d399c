"""Shared-secret lookup and verification for devices."""

from __future__ import annotations

import hmac
import json
import logging
from functools import lru_cache
from typing import Dict, Mapping, Optional

from settings import get_settings

logger = logging.getLogger(__name__)


def parse_device_keys(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse a ``{"device_id": "secret"}`` JSON object.

    Returns ``None`` when nothing is configured or the value is malformed;
    malformed configuration is logged rather than raised.
    """
    if raw is None or not raw.strip():
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("DEVICE_KEYS_JSON is not valid JSON: %s", exc.msg, extra={"reason": "malformed"})
        return None
    if not isinstance(decoded, dict):
        logger.error(
            "DEVICE_KEYS_JSON must be a JSON object, got %s",
            type(decoded).__name__,
            extra={"reason": "malformed"},
        )
        return None

    keys: Dict[str, str] = {}
    for device_id, secret in decoded.items():
        if not isinstance(secret, str) or not secret:
            logger.warning(
                "Ignoring device key entry without a usable secret",
                extra={"device_id": device_id},
            )
            continue
        keys[device_id] = secret
    return keys


class DeviceKeyDirectory:
    """Resolves the expected secret for a device.

    Per-device entries win over the single fallback secret. A device with
    neither can never authenticate.
    """

    def __init__(
        self,
        device_keys: Optional[Mapping[str, str]] = None,
        fallback_key: Optional[str] = None,
    ) -> None:
        self._device_keys: Dict[str, str] = dict(device_keys or {})
        self._fallback_key = fallback_key or None

    @classmethod
    def from_config(
        cls, keys_json: Optional[str], fallback_key: Optional[str]
    ) -> "DeviceKeyDirectory":
        return cls(device_keys=parse_device_keys(keys_json), fallback_key=fallback_key)

    @property
    def is_configured(self) -> bool:
        return bool(self._device_keys) or self._fallback_key is not None

    def resolve_key(self, device_id: str) -> Optional[str]:
        secret = self._device_keys.get(device_id)
        if secret:
            return secret
        return self._fallback_key

    def verify(self, device_id: str, provided_key: Optional[str]) -> bool:
        expected = self.resolve_key(device_id)
        if expected is None or not provided_key:
            return False
        return hmac.compare_digest(provided_key.encode("utf-8"), expected.encode("utf-8"))


@lru_cache
def build_default_key_directory() -> DeviceKeyDirectory:
    settings = get_settings()
    directory = DeviceKeyDirectory.from_config(settings.device_keys_json, settings.device_key)
    if not directory.is_configured:
        logger.warning("No device keys configured; every ingest request will be rejected.")
    return directory

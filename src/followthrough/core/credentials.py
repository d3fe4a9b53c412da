"""Per-user integration tokens.

``credentials.json`` in the data dir maps user -> integration id -> token.
Tokens from the environment (``Settings``) are used when a user has none
stored.  Reads are cached per process; ``clear_cache`` drops them on logout.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Dict, Optional

from followthrough.core.config import Settings
from followthrough.integrations.base import IntegrationId

logger = logging.getLogger("followthrough.credentials")


class CredentialStore:
    def __init__(self, data_dir: str, settings: Optional[Settings] = None) -> None:
        self._path = os.path.join(data_dir, "credentials.json")
        self._settings = settings
        self._cache: Optional[Dict[str, Dict[str, str]]] = None
        self._lock = threading.Lock()

    def _env_token(self, integration_id: IntegrationId) -> Optional[str]:
        if self._settings is None:
            return None
        return {
            IntegrationId.EMAIL: self._settings.gmail_access_token,
            IntegrationId.SLACK: self._settings.slack_bot_token,
            IntegrationId.TELEGRAM: self._settings.telegram_bot_token,
            IntegrationId.DISCORD: self._settings.discord_bot_token,
            IntegrationId.X: self._settings.x_bearer_token,
        }.get(integration_id)

    def _load(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            if self._cache is not None:
                return self._cache
            data: Dict[str, Dict[str, str]] = {}
            if os.path.exists(self._path):
                try:
                    with open(self._path, "r", encoding="utf-8") as f:
                        raw = json.load(f)
                    if isinstance(raw, dict):
                        data = {str(k): dict(v) for k, v in raw.items() if isinstance(v, dict)}
                except (OSError, json.JSONDecodeError) as exc:
                    logger.error("Failed to read credentials: %s", exc)
            self._cache = data
            return data

    def token_for(self, integration_id: "str | IntegrationId", user: str = "default") -> Optional[str]:
        key = IntegrationId.parse(integration_id)
        stored = self._load().get(user, {}).get(key.value)
        return stored or self._env_token(key)

    def set_token(self, integration_id: "str | IntegrationId", token: str, user: str = "default") -> None:
        key = IntegrationId.parse(integration_id)
        data = self._load()
        with self._lock:
            data.setdefault(user, {})[key.value] = token
            os.makedirs(os.path.dirname(self._path), exist_ok=True)
            tmp_path = f"{self._path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        logger.info("Stored %s token for %s", key.value, user)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache = None

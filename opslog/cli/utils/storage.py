"""Persisted session storage for opslog.

The platform's web client keeps the login token, the current user and the
cached menu / permission lists under one namespaced key-value object. We keep
the same shape in a JSON file:

    {
        "<namespace>": {
            "token": "eyJhbGciOi...",
            "sysAdmin": {...},
            "leftMenuList": [...],
            "permissionList": [...]
        }
    }

The file is re-read on every access so a login performed by another process
is picked up by the next outbound request.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

DEFAULT_SESSION_PATH = "~/.opslog/session.json"
DEFAULT_NAMESPACE = "opslog"

TOKEN_KEY = "token"
USER_KEY = "sysAdmin"
MENU_KEY = "leftMenuList"
PERMISSION_KEY = "permissionList"


class SessionStore:
    """Namespaced key-value store backed by a JSON file.

    Only the login flow and the session-expiry coordinator write to it;
    everything else reads.
    """

    def __init__(self, path: Optional[str] = None, namespace: str = DEFAULT_NAMESPACE):
        """Initialize the store.

        Args:
            path: Session file path. Defaults to ~/.opslog/session.json
            namespace: Top-level key holding this client's values
        """
        self.path = Path(os.path.expanduser(path or DEFAULT_SESSION_PATH))
        self.namespace = namespace

    def _load_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)
        # The file holds a bearer token
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            logger.debug("Could not restrict permissions on %s", self.path)

    def get_storage(self) -> Dict[str, Any]:
        """Return a copy of this namespace's values."""
        namespace = self._load_all().get(self.namespace)
        return dict(namespace) if isinstance(namespace, dict) else {}

    def get_item(self, key: str, default: Any = None) -> Any:
        return self.get_storage().get(key, default)

    def set_item(self, key: str, value: Any) -> None:
        data = self._load_all()
        namespace = data.get(self.namespace)
        if not isinstance(namespace, dict):
            namespace = {}
        namespace[key] = value
        data[self.namespace] = namespace
        self._save_all(data)

    def clear_item(self, key: str) -> None:
        data = self._load_all()
        namespace = data.get(self.namespace)
        if isinstance(namespace, dict) and key in namespace:
            del namespace[key]
            self._save_all(data)

    def clear_all(self) -> None:
        """Drop every persisted value, not just this namespace."""
        if self.path.exists():
            self.path.unlink()
        logger.debug("Cleared session storage at %s", self.path)

    def get_token(self) -> Optional[str]:
        """Return the bearer token, or None when logged out.

        Older sessions stored the token as an object; accept both shapes.
        """
        token = self.get_item(TOKEN_KEY)
        if isinstance(token, dict):
            token = token.get("access_token") or token.get("token")
        if not token or token in ("null", "undefined"):
            return None
        return str(token)

    def save_login(self, payload: Dict[str, Any]) -> None:
        """Persist a successful login response in one write."""
        data = self._load_all()
        data[self.namespace] = {
            TOKEN_KEY: payload.get(TOKEN_KEY),
            USER_KEY: payload.get(USER_KEY) or {},
            MENU_KEY: payload.get(MENU_KEY) or [],
            PERMISSION_KEY: payload.get(PERMISSION_KEY) or [],
        }
        self._save_all(data)

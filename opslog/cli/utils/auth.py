"""Authentication management for opslog.

Owns the session store for a CLI run, performs the login exchange, and hands
out gateways wired to the process-wide expiry coordinator.
"""

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from opslog.opslog_api_control import OpslogAPI, AuthenticationError
from opslog.cli.utils.config import Config
from opslog.cli.utils.expiry import (
    SessionExpiryCoordinator,
    get_coordinator,
    install_coordinator,
)
from opslog.cli.utils.gateway import RequestGateway
from opslog.cli.utils.storage import SessionStore, USER_KEY, PERMISSION_KEY


logger = logging.getLogger(__name__)

# Receives the captcha {"idKey", "image"} and returns the text read from it
CaptchaSolver = Callable[[Dict[str, str]], str]


class AuthManager:
    """Manages the persisted session and provides API clients."""

    @staticmethod
    def get_store(config: Config) -> SessionStore:
        return SessionStore(config.session_file, namespace=config.session_namespace)

    @classmethod
    def install_expiry_handling(
        cls,
        config: Config,
        notifier: Optional[Callable[[str], None]] = None,
        navigator: Optional[Callable[[], None]] = None,
    ) -> SessionExpiryCoordinator:
        """Create and install the process-wide expiry coordinator."""
        coordinator = SessionExpiryCoordinator(
            cls.get_store(config),
            notifier=notifier,
            navigator=navigator,
            quiet_window=config.expiry_quiet_window,
        )
        return install_coordinator(coordinator)

    @classmethod
    def login(
        cls,
        config: Config,
        username: str,
        password: str,
        solve_captcha: CaptchaSolver,
        api: Optional[OpslogAPI] = None,
    ) -> Dict[str, Any]:
        """Log in and persist the session.

        Args:
            config: Configuration to use
            username: Account name
            password: Account password
            solve_captcha: Returns the captcha text for a fetched captcha
            api: Login client; built from ``config`` when omitted

        Returns:
            The login payload (token, sysAdmin, leftMenuList, permissionList)

        Raises:
            AuthenticationError: If the platform rejects the login
            ValidationError: If a credential or the captcha text is empty
        """
        api = api or OpslogAPI(config.api_config())
        captcha = api.get_captcha()
        captcha_code = solve_captcha(captcha)

        payload = api.login(username, password, captcha_code, captcha["idKey"])

        store = cls.get_store(config)
        store.save_login(payload)
        get_coordinator(store).reset()
        logger.debug("Session saved to %s", store.path)
        return payload

    @classmethod
    def logout(cls, config: Config) -> bool:
        """Drop the persisted session. Returns False if there was none."""
        store = cls.get_store(config)
        had_session = store.get_token() is not None
        store.clear_all()
        return had_session

    @classmethod
    def current_user(cls, config: Config) -> Optional[Dict[str, Any]]:
        """Return the stored user and permissions, or None when logged out."""
        store = cls.get_store(config)
        if store.get_token() is None:
            return None
        return {
            "user": store.get_item(USER_KEY) or {},
            "permissions": store.get_item(PERMISSION_KEY) or [],
            "session_file": str(store.path),
        }

    @classmethod
    def require_session(cls, config: Config) -> SessionStore:
        """Return the store, or raise if nobody is logged in.

        Raises:
            AuthenticationError: If no token is stored
        """
        store = cls.get_store(config)
        if store.get_token() is None:
            raise AuthenticationError("Not logged in")
        return store

    @classmethod
    def get_gateway(
        cls,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> RequestGateway:
        """Build a request gateway for the current session.

        Raises:
            AuthenticationError: If no token is stored
        """
        store = cls.require_session(config)
        return RequestGateway(
            config.base_url,
            store,
            get_coordinator(store),
            api_prefix=config.api_prefix,
            timeout=config.timeout,
            verify_ssl=config.verify_ssl,
            transport=transport,
        )

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Opslog API Control - platform endpoints, error taxonomy and login client

This module provides:
- API endpoint paths with a configurable prefix
- The exception hierarchy shared by the gateway, polling and streaming layers
- A synchronous login client (captcha + credentials -> bearer token)

Live log streaming and snapshot retrieval are asynchronous and live in
opslog.cli.utils (gateway, polling, stream); this module only performs the
one-shot login exchange.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
import urllib3


logger = logging.getLogger(__name__)

# Application-level result codes. The platform wraps every JSON response in
# {"code": ..., "message": ..., "data": ...}.
SUCCESS_CODES = frozenset({0, 200})
# Codes that mean "token expired or invalid" even on an HTTP 200 response.
SESSION_EXPIRED_CODES = frozenset({401, 406})

# Work statuses reported by the task service; 3 and 4 are finished states.
TERMINAL_WORK_STATUSES = frozenset({3, 4})


@dataclass
class OpslogConfig:
    """Opslog API configuration class."""
    base_url: str = "http://localhost:8000"
    timeout: int = 15
    max_retries: int = 3
    retry_delay: float = 1.0
    verify_ssl: bool = True
    # API path prefix (None = use code default)
    api_prefix: Optional[str] = None


class APIEndpoints:
    """API endpoint paths with a configurable prefix.

    Relative request paths are joined onto the prefix; paths that already
    carry it are left untouched.
    """

    DEFAULT_API_PREFIX = "/api/v1"

    def __init__(self, api_prefix: Optional[str] = None):
        self._api_prefix = (api_prefix or self.DEFAULT_API_PREFIX).rstrip("/")

    @property
    def prefix(self) -> str:
        return self._api_prefix

    def normalize(self, path: str) -> str:
        """Map a relative endpoint path onto the canonical API prefix."""
        if path.startswith(("http://", "https://")):
            return path
        if path == self._api_prefix or path.startswith(self._api_prefix + "/"):
            return path
        return self._api_prefix + (path if path.startswith("/") else "/" + path)

    @property
    def CAPTCHA(self) -> str:
        return f"{self._api_prefix}/captcha"

    @property
    def LOGIN(self) -> str:
        return f"{self._api_prefix}/login"

    def task_log(self, task_id: int, work_id: int) -> str:
        return f"{self._api_prefix}/task/ansible/{task_id}/log/{work_id}"

    def task_log_direct(self, task_id: int, work_id: int) -> str:
        return f"{self.task_log(task_id, work_id)}/direct"


class OpslogAPIError(Exception):
    """Opslog API base exception."""
    pass


class AuthenticationError(OpslogAPIError):
    """Login failed exception."""
    pass


class ValidationError(OpslogAPIError):
    """Input validation failed exception."""
    pass


class UnauthorizedError(OpslogAPIError):
    """The server signalled that the session token is expired or invalid."""
    pass


class RedirectInProgressError(OpslogAPIError):
    """Request refused because a login redirect is already underway."""
    pass


class TransportUnreachableError(OpslogAPIError):
    """No response was received (network down, connection refused, reset)."""
    pass


class RequestTimeoutError(OpslogAPIError):
    """An attempt exceeded its timeout budget.

    Attributes:
        timeout: The budget (seconds) of the attempt that ran out
        attempts: How many attempts were made before giving up
    """

    def __init__(self, message: str, timeout: Optional[float] = None, attempts: int = 1):
        super().__init__(message)
        self.timeout = timeout
        self.attempts = attempts

    @property
    def still_running(self) -> bool:
        """True when the longer retry budget ran out, i.e. the backend is likely still busy."""
        return self.attempts > 1


class MalformedPayloadError(OpslogAPIError):
    """A response body could not be decoded."""
    pass


class ServerRejectedError(OpslogAPIError):
    """The backend answered with a well-formed error response."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NotFoundError(ServerRejectedError):
    """Task, work item or log does not exist."""
    pass


class ConnectError(OpslogAPIError):
    """A log stream could not be opened within its reconnect budget."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


def validate_task_ids(task_id: Any, work_id: Any) -> Optional[str]:
    """Validate a (task, work) identifier pair.

    Returns None if valid, or an error message if invalid.
    """
    for label, value in (("Task ID", task_id), ("Work ID", work_id)):
        if value is None or (isinstance(value, str) and not value.strip()):
            return f"{label} cannot be empty"
        try:
            number = int(value)
        except (TypeError, ValueError):
            return f"{label} must be a positive integer, got: {str(value)[:20]}"
        if number <= 0:
            return f"{label} must be a positive integer, got: {number}"
    return None


class OpslogAPI:
    """
    Opslog login client.

    Performs the captcha + credential exchange against the platform and
    returns the login payload; persisting it is the caller's job.
    """

    ERROR_BODY_PREVIEW_LIMIT = 2000

    def __init__(self, config: Optional[OpslogConfig] = None):
        self.config = config or OpslogConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.endpoints = APIEndpoints(api_prefix=self.config.api_prefix)
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        if not self.config.verify_ssl:
            # Self-signed platform certificates are common on internal deployments
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session = requests.Session()
        self.session.trust_env = True

    def _validate_required_params(self, **kwargs) -> None:
        """Validate required parameters."""
        for param_name, param_value in kwargs.items():
            if param_value is None or (isinstance(param_value, str) and not param_value.strip()):
                raise ValidationError(f"Required parameter '{param_name}' cannot be empty")

    def _make_request_with_retry(self, method: str, url: str, **kwargs) -> requests.Response:
        """Request method with retry mechanism."""
        last_exception = None
        if "verify" not in kwargs:
            kwargs["verify"] = self.config.verify_ssl

        for attempt in range(self.config.max_retries + 1):
            try:
                if method.upper() == "POST":
                    response = self.session.post(url, timeout=self.config.timeout, **kwargs)
                else:
                    response = self.session.get(url, timeout=self.config.timeout, **kwargs)

                if response.status_code < 500:
                    return response

                if attempt < self.config.max_retries:
                    logger.warning(
                        "Server error %s, retrying in %ss...",
                        response.status_code,
                        self.config.retry_delay,
                    )
                    time.sleep(self.config.retry_delay * (attempt + 1))
                    continue
                response.raise_for_status()

            except requests.exceptions.Timeout as e:
                last_exception = e
                if attempt < self.config.max_retries:
                    logger.warning("Request timeout, retrying in %ss...", self.config.retry_delay)
                    time.sleep(self.config.retry_delay * (attempt + 1))
                    continue
                raise RequestTimeoutError(
                    f"Request timeout after {self.config.max_retries} retries",
                    timeout=self.config.timeout,
                    attempts=attempt + 1,
                )

            except requests.exceptions.ConnectionError as e:
                last_exception = e
                if attempt < self.config.max_retries:
                    logger.warning("Connection error, retrying in %ss...", self.config.retry_delay)
                    time.sleep(self.config.retry_delay * (attempt + 1))
                    continue
                raise TransportUnreachableError(
                    f"Connection error after {self.config.max_retries} retries: {str(e)}"
                )

            except requests.exceptions.RequestException as e:
                raise OpslogAPIError(f"Request failed: {str(e)}")

        if last_exception:
            raise OpslogAPIError(f"All retry attempts failed. Last error: {str(last_exception)}")
        raise OpslogAPIError("All retry attempts failed")

    def _make_request(self, method: str, endpoint: str, payload: Optional[Dict] = None) -> Dict[str, Any]:
        """Send a request and return the decoded result envelope."""
        url = f"{self.base_url}{endpoint}"
        kwargs: Dict[str, Any] = {"headers": self.headers}
        if payload is not None:
            kwargs["json"] = payload

        response = self._make_request_with_retry(method, url, **kwargs)
        logger.debug("Request: %s %s -> %s", method, url, response.status_code)

        if response.status_code >= 400:
            body_preview = (response.text or "")[:self.ERROR_BODY_PREVIEW_LIMIT]
            raise ServerRejectedError(
                f"HTTP {response.status_code} while requesting {endpoint}: {body_preview.strip() or '<empty>'}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except json.JSONDecodeError:
            body_preview = (response.text or "")[:self.ERROR_BODY_PREVIEW_LIMIT]
            raise MalformedPayloadError(f"Invalid JSON response from API. Body preview: {body_preview}")

        if not isinstance(result, dict) or "code" not in result:
            raise MalformedPayloadError("Invalid API response format")

        return result

    def get_captcha(self) -> Dict[str, str]:
        """Fetch a login captcha.

        Returns:
            Dict with "idKey" (captcha identifier) and "image" (base64 data URL)
        """
        result = self._make_request("GET", self.endpoints.CAPTCHA)
        if result.get("code") not in SUCCESS_CODES:
            raise AuthenticationError(f"Captcha request failed: {result.get('message', 'unknown error')}")
        data = result.get("data") or {}
        if not data.get("idKey"):
            raise MalformedPayloadError("Captcha response is missing idKey")
        return {"idKey": data["idKey"], "image": data.get("image", "")}

    def login(self, username: str, password: str, captcha_code: str, captcha_id: str) -> Dict[str, Any]:
        """Authenticate and return the login payload.

        Args:
            username: Account name
            password: Account password
            captcha_code: Text read from the captcha image
            captcha_id: The captcha idKey returned by get_captcha()

        Returns:
            Dict with "token", "sysAdmin", "leftMenuList", "permissionList"

        Raises:
            ValidationError: When a parameter is empty
            AuthenticationError: When the platform rejects the login
        """
        self._validate_required_params(
            username=username,
            password=password,
            captcha_code=captcha_code,
            captcha_id=captcha_id,
        )

        payload = {
            "username": username,
            "password": password,
            "image": captcha_code,
            "idKey": captcha_id,
        }

        try:
            result = self._make_request("POST", self.endpoints.LOGIN, payload)
        except ServerRejectedError as e:
            raise AuthenticationError(f"Login request failed: {e}") from e

        if result.get("code") not in SUCCESS_CODES:
            raise AuthenticationError(f"Login failed: {result.get('message', 'Unknown login error')}")

        data = result.get("data") or {}
        if not data.get("token"):
            raise AuthenticationError("Login failed: response did not include a token")

        logger.info("Login successful for %s", username)
        return data

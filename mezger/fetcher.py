import logging
import os
import time
from threading import Lock
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

log = logging.getLogger(__name__)

_DEFAULT_USER_AGENT = "MezgerSearch Data Collector"
_DEFAULT_DELAY_SECS = 2.0
_TIMEOUT = 30


class TokenBucket:
    """
    Thread-safe token bucket for request pacing.

    Allows up to `burst` tokens initially; refills at `rate` tokens/second.
    Calling consume() blocks until a token is available.
    """

    def __init__(self, rate: float, burst: int = 1) -> None:
        self._rate   = rate
        self._burst  = burst
        self._tokens = float(burst)
        self._last   = time.monotonic()
        self._lock   = Lock()

    def consume(self) -> None:
        """Block until one token is available, then consume it."""
        with self._lock:
            now     = time.monotonic()
            elapsed = now - self._last
            self._last   = now
            self._tokens = min(self._burst, self._tokens + elapsed * self._rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return
            wait = (1.0 - self._tokens) / self._rate

        time.sleep(wait)
        with self._lock:
            self._last   = time.monotonic()
            self._tokens = 0.0


class Fetcher:
    """
    HTTP client for a single source.

    Wraps a requests.Session with:
      - a descriptive User-Agent (settings "user_agent", overridable per site)
      - auth injection from site config (api_key / bearer / basic / none)
      - politeness pacing via TokenBucket; "request_delay_secs" (default 2s)
        or an explicit "rate_limit" block
      - automatic retry with exponential backoff via urllib3 Retry

    One Fetcher is created per enabled site in client.py and never shared.
    """

    def __init__(self, site_config: dict[str, Any], settings: Optional[dict[str, Any]] = None) -> None:
        settings      = settings or {}
        self._config  = site_config
        self._name    = site_config.get("name", "?")
        self._timeout = float(site_config.get("timeout_secs", settings.get("request_timeout_secs", _TIMEOUT)))
        self._session = requests.Session()
        self._session.headers["User-Agent"] = (
            site_config.get("user_agent") or settings.get("user_agent") or _DEFAULT_USER_AGENT
        )

        # Site retry settings take precedence over global defaults
        retry_cfg = {**settings.get("retry", {}), **site_config.get("retry", {})}
        self._configure_retry(retry_cfg)
        self._inject_auth(site_config.get("auth", {}))

        rl = site_config.get("rate_limit")
        if rl:
            rate, burst = float(rl.get("requests_per_second", 0.5)), int(rl.get("burst", 1))
        else:
            delay = float(site_config.get("request_delay_secs", settings.get("request_delay_secs", _DEFAULT_DELAY_SECS)))
            rate, burst = (1.0 / delay if delay > 0 else 1000.0), 1
        self._bucket = TokenBucket(rate=rate, burst=burst)

    def get(self, url: str, params: Optional[dict] = None, **kwargs: Any) -> Any:
        """Paced, retrying GET. Returns parsed JSON."""
        return self._request(url, params, **kwargs).json()

    def get_text(self, url: str, params: Optional[dict] = None, **kwargs: Any) -> str:
        """Paced, retrying GET. Returns the response body as text (HTML pages)."""
        return self._request(url, params, **kwargs).text

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _request(self, url: str, params: Optional[dict], **kwargs: Any) -> requests.Response:
        self._bucket.consume()
        log.debug("[%s] GET %s params=%s", self._name, url, params)
        response = self._session.get(url, params=params, timeout=self._timeout, **kwargs)
        response.raise_for_status()
        return response

    def _configure_retry(self, retry_cfg: dict[str, Any]) -> None:
        retry = Retry(
            total            = retry_cfg.get("max_attempts", 3),
            backoff_factor   = retry_cfg.get("backoff_factor", 2.0),
            status_forcelist = retry_cfg.get("retry_on_status", [429, 500, 502, 503, 504]),
            allowed_methods  = ["GET"],
            raise_on_status  = False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def _inject_auth(self, auth_config: dict[str, Any]) -> None:
        """
        Credentials are read from environment variables at construction
        time so a missing variable surfaces as KeyError before any fetch.
        """
        auth_type = auth_config.get("type", "none")

        if auth_type == "api_key":
            self._session.headers[auth_config["header"]] = os.environ[auth_config["env_var"]]

        elif auth_type == "bearer":
            token = os.environ[auth_config["env_var"]]
            self._session.headers["Authorization"] = f"Bearer {token}"

        elif auth_type == "basic":
            username = os.environ[auth_config["username_env_var"]]
            password = os.environ[auth_config["password_env_var"]]
            self._session.auth = (username, password)

        elif auth_type == "none":
            pass

        else:
            raise ValueError(f"Unknown auth type: {auth_type!r}")

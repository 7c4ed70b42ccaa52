"""
Log filter that masks gateway credentials before records reach any handler.
"""
import logging
import re
from typing import Iterable, Optional

# Authorization: Basic <b64>, basic_auth=user:pass, password=...
_AUTH_HEADER_RE = re.compile(r"(Authorization['\"]?\s*[:=]\s*['\"]?Basic\s+)([A-Za-z0-9+/=]+)", re.I)
_KEY_VALUE_RE = re.compile(r"((?:password|basic_auth|auth)['\"]?\s*[:=]\s*['\"]?)([^\s,'\"}]+)", re.I)


class SecretMaskFilter(logging.Filter):
    """
    Masks credentials in log messages.

    Literal secrets (the configured password, tunnel credentials) can be
    registered at runtime with add_secret().
    """

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets = {s for s in (secrets or []) if s}

    def add_secret(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def mask(self, msg: str) -> str:
        masked = _AUTH_HEADER_RE.sub(r"\1***MASKED***", msg)
        masked = _KEY_VALUE_RE.sub(r"\1***MASKED***", masked)
        for secret in self._secrets:
            masked = masked.replace(secret, "***MASKED***")
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except Exception:
            return True

        masked = self.mask(msg)
        if masked != msg:
            record.msg = masked
            record.args = ()

        return True


_FILTER = SecretMaskFilter()


def install_secret_mask_filter(secrets: Optional[Iterable[str]] = None, httpx_level: Optional[int] = logging.WARNING) -> SecretMaskFilter:
    """
    Attach the mask filter to the package logger and to 'httpx'.

    Filters on a logger do not apply to its children, so the filter also
    goes on every handler of the root logger.
    """
    for secret in secrets or []:
        _FILTER.add_secret(secret)

    for name in ("gateway_supervisor", "httpx"):
        lg = logging.getLogger(name)
        if _FILTER not in lg.filters:
            lg.addFilter(_FILTER)

    for handler in logging.getLogger().handlers:
        if _FILTER not in handler.filters:
            handler.addFilter(_FILTER)

    if httpx_level is not None:
        logging.getLogger("httpx").setLevel(httpx_level)

    return _FILTER


def get_mask_filter() -> SecretMaskFilter:
    return _FILTER

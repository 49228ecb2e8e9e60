# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import os
import sys as _sys
import json as _json
import contextvars
from datetime import datetime, timezone


server_var = contextvars.ContextVar("server", default="-")
worker_var = contextvars.ContextVar("worker", default="-")

# Worker identities use their reversed name as password
_secrets: set[str] = set()


def register_secret(value: str) -> None:
    if value:
        _secrets.add(value)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _redact_value(val):
    try:
        s = str(val)
        for secret in _secrets:
            if secret in s:
                s = s.replace(secret, "***REDACTED***")
        return s
    except Exception:
        return "<unprintable>"


class RedactFilter(logging.Filter):
    """Injects server/worker context + redacts identity passwords."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.server = server_var.get()
        record.worker = worker_var.get()
        if not _secrets:
            return True
        try:
            if isinstance(record.args, (tuple, list)):
                new_args = [
                    _redact_value(a) if isinstance(a, str) else a for a in record.args
                ]
                record.args = (
                    tuple(new_args) if isinstance(record.args, tuple) else new_args
                )
            if isinstance(record.msg, str):
                record.msg = _redact_value(record.msg)
        except Exception:
            pass
        return True


LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}

EXTRA_KEYS = (
    "page",
    "account",
    "que_id",
    "failures",
    "threads",
    "remaining",
    "crawled",
    "took_ms",
)


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        mark = LEVEL_MARK.get(record.levelno, "•")
        ts = _now_iso()
        server = getattr(record, "server", "-")
        worker = getattr(record, "worker", "-")
        msg = super().format(record)
        extras = []
        for k in EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                extras.append(f"{k}={v}")
        extras_s = f" | {' '.join(extras)}" if extras else ""
        return f"{ts} {mark} {record.levelname:<8} [{server}] (worker={worker}) {msg}{extras_s}"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "msg": super().format(record),
            "server": getattr(record, "server", "-"),
            "worker": getattr(record, "worker", "-"),
            "logger": record.name,
        }
        for k in EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                base[k] = v
        return _json.dumps(base, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="hof", **ctx):
    logger = logging.getLogger(name)
    return ContextAdapter(logger, dict(ctx))


def configure_app_logging(level: str | None = None, fmt: str | None = None):
    """
    Unified logging config with:
    - LOG_FORMAT: HUMAN (default) or JSON
    - LOG_LEVEL: DEBUG/INFO/etc.
    - redaction + server/worker context
    """
    fmt = (fmt or os.getenv("LOG_FORMAT", "HUMAN")).strip().upper()
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()

    root = logging.getLogger("hof")
    root.handlers.clear()
    h = logging.StreamHandler(stream=_sys.stdout)
    if fmt == "JSON":
        h.setFormatter(JSONFormatter("%(message)s"))
    else:
        h.setFormatter(HumanFormatter("%(message)s"))
    h.addFilter(RedactFilter())
    root.addHandler(h)

    root.propagate = False
    root.setLevel(getattr(logging, lvl, logging.INFO))

    for lib in ("aiohttp", "aiohttp.client", "aiohttp.internal", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)
    return get_logger("hof")

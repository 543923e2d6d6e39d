import json
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Request id carried through a request by RequestLoggingMiddleware
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# HTTP fields rendered on the request line in pretty mode
HTTP_FIELDS = ("method", "path", "status", "duration_ms", "client", "user_agent")

# Domain fields passed through logger `extra=`
DOMAIN_FIELDS = (
    "run_id",
    "player_name",
    "game_mode",
    "score",
    "client_score",
    "is_new_best",
    "reason",
    "count",
    "url",
    "errors",
    "error",
)


def _structured_fields(record: logging.LogRecord, names) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key in names:
        val = getattr(record, key, None)
        if val is not None:
            fields[key] = val
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        payload.update(_structured_fields(record, HTTP_FIELDS))
        payload.update(_structured_fields(record, DOMAIN_FIELDS))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Readable single-line output for local development."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREY = "\033[90m"
    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        if not self.use_color or not color:
            return text
        return f"{color}{text}{self.RESET}"

    def _status(self, status) -> Optional[str]:
        if not isinstance(status, int):
            return None
        if status < 300:
            color = "\033[32m"
        elif status < 400:
            color = "\033[36m"
        elif status < 500:
            color = "\033[33m"
        else:
            color = "\033[31m"
        return self._paint(str(status), color)

    def _request_line(self, record: logging.LogRecord) -> Optional[str]:
        parts: List[str] = []
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        duration_ms = getattr(record, "duration_ms", None)
        if method:
            parts.append(self._paint(method, self.BOLD))
        if path:
            parts.append(self._paint(path, "\033[36m"))
        status = self._status(getattr(record, "status", None))
        if status:
            parts.append(status)
        if duration_ms is not None:
            parts.append(self._paint(f"{duration_ms}ms", self.GREY))
        return " ".join(parts) if parts else None

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        parts: List[str] = [
            self._paint(level, self.LEVEL_COLORS.get(level, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._paint(f"rid={rid}", "\033[35m"))
        parts.append(self._paint(record.name, "\033[34m"))

        req_line = self._request_line(record)
        if req_line:
            parts.append(req_line)

        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])

        fields = _structured_fields(record, DOMAIN_FIELDS)
        client = getattr(record, "client", None)
        if client:
            fields["client"] = client
        ua = getattr(record, "user_agent", None)
        if ua:
            fields["ua"] = ua if len(ua) <= 64 else ua[:61] + "..."
        if fields:
            ctx = " ".join(f"{k}={v}" for k, v in fields.items())
            parts.append(self._paint(f"[{ctx}]", self.GREY))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure the root and uvicorn loggers.

    LOG_FORMAT=pretty or LOG_FORMAT=json force a format; otherwise pretty is
    used when stdout is a TTY. LOG_COLOR=0 disables ANSI colors.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = fmt_env == "pretty" or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=use_color) if use_pretty else JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "typerush") -> logging.Logger:
    return logging.getLogger(name)

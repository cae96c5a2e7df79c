"""Logging setup for the provider, with optional Supabase shipping.

- Plain text on stderr for local runs
- JSON entries (tag split out of the "[TAG] message" convention) batched
  into the Supabase ``logs`` table when a client is configured
- The ``oidc-audit`` logger carries one JSON line per authorization decision
"""

import atexit
import json
import logging
import re
import sys
import threading
import time
from queue import Empty, Queue
from typing import Optional

AUDIT_LOGGER = "oidc-audit"

_TAG_RE = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)


def split_tag(message: str) -> tuple:
    """Split "[TAG] text" into ("TAG", "text"); untagged messages get None."""
    match = _TAG_RE.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class JSONFormatter(logging.Formatter):
    """Turns a record into the dict stored in the logs table."""

    def __init__(self, service_name: str = None, issuer: str = None):
        super().__init__()
        self.service_name = service_name or "oidc-provider"
        self.issuer = issuer

    def to_entry(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())
        if record.name == AUDIT_LOGGER:
            tag = "AUDIT"

        entry = {
            "service": self.service_name,
            "issuer": self.issuer,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": {
                "logger": record.name,
                "function": record.funcName,
                "line": record.lineno,
            },
        }
        if record.exc_info:
            entry["extra"]["exception"] = self.formatException(record.exc_info)
        return entry

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.to_entry(record), default=str)


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


class SupabaseHandler(logging.Handler):
    """Buffers log entries and inserts them into Supabase in batches.

    A batch is sent when ``batch_size`` entries are queued, and otherwise every
    ``flush_interval`` seconds from a daemon thread.
    """

    def __init__(
        self,
        supabase_client,
        service_name: str,
        issuer: str = None,
        batch_size: int = 20,
        flush_interval: float = 10.0,
        start_worker: bool = True,
    ):
        super().__init__()
        self.supabase = supabase_client
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.setFormatter(JSONFormatter(service_name, issuer))

        self._queue: Queue = Queue()
        self._shutdown = threading.Event()
        if start_worker:
            threading.Thread(target=self._flush_worker, daemon=True).start()
            atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        try:
            self._queue.put(self.formatter.to_entry(record))
            if self._queue.qsize() >= self.batch_size:
                self.flush()
        except Exception:
            self.handleError(record)

    def _flush_worker(self):
        while not self._shutdown.wait(self.flush_interval):
            if not self._queue.empty():
                self.flush()

    def flush(self):
        logs = []
        while len(logs) < self.batch_size * 2:
            try:
                logs.append(self._queue.get_nowait())
            except Empty:
                break
        if not logs:
            return
        try:
            self.supabase.table("logs").insert(logs).execute()
        except Exception as e:
            # stderr only, logging here would recurse into this handler
            print(f"[WARNING] Failed to send {len(logs)} logs to Supabase: {e}", file=sys.stderr)

    def close(self):
        self._shutdown.set()
        self.flush()
        super().close()


_supabase_handler: Optional[SupabaseHandler] = None


def setup_logging(
    service_name: str = "oidc-provider",
    issuer: str = None,
    supabase_client=None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Configure the root logger.

    stderr always gets a handler. Supabase is added when a client is passed;
    if that fails the provider keeps running with stderr only.
    """
    global _supabase_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Audit lines are already JSON
    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.setLevel(logging.INFO)

    _supabase_handler = None
    if supabase_client:
        try:
            _supabase_handler = SupabaseHandler(supabase_client, service_name=service_name, issuer=issuer)
            _supabase_handler.setLevel(logging.INFO)
            root_logger.addHandler(_supabase_handler)
        except Exception as e:
            print(f"[WARNING] Supabase logging setup failed: {e}", file=sys.stderr)
            _supabase_handler = None

    # Supabase talks through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if _supabase_handler:
        logger.info(f"[STARTUP] Supabase logging enabled for {service_name}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")
    return root_logger


def flush_logs():
    """Send any queued entries to Supabase now."""
    if _supabase_handler:
        _supabase_handler.flush()

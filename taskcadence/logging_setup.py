from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path


LOG_DIR = Path("/data/logs")
LOG_PREFIX = "taskcadence"

# Named loggers used across the package; levels follow the root at runtime.
ENGINE_LOGGERS = (
    "taskcadence",
    "taskcadence.generation",
    "taskcadence.completion",
    "taskcadence.materializer",
    "taskcadence.locks",
    "taskcadence.crud",
    "taskcadence.api",
)


def _safe_level(level: str | None, default: str = "INFO") -> int:
    raw = (level or default).strip().upper()
    return getattr(logging, raw, logging.INFO)


class DailyDateFileHandler(logging.Handler):
    """Write logs to <dir>/taskcadence-YYYY-MM-DD.log, switching files when the date changes."""

    def __init__(self, *, base_dir: Path = LOG_DIR, prefix: str = LOG_PREFIX, level: int = logging.INFO):
        super().__init__(level=level)
        self.base_dir = Path(base_dir)
        self.prefix = str(prefix)
        self._lock = threading.RLock()
        self._current_date = self._today()
        self._stream = None
        self._open_for_date(self._current_date)

    def _today(self) -> str:
        return datetime.now().strftime("%Y-%m-%d")

    def path_for_date(self, date_str: str) -> Path:
        return self.base_dir / f"{self.prefix}-{date_str}.log"

    def _open_for_date(self, date_str: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        # Line-buffered text mode.
        self._stream = open(self.path_for_date(date_str), "a", encoding="utf-8", buffering=1)

    def _close_stream(self) -> None:
        if self._stream:
            try:
                self._stream.flush()
                self._stream.close()
            except OSError:
                pass
        self._stream = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception:
            self.handleError(record)
            return

        with self._lock:
            try:
                today = self._today()
                if today != self._current_date or not self._stream:
                    self._close_stream()
                    self._current_date = today
                    self._open_for_date(today)
                self._stream.write(msg + "\n")
            except Exception:
                self.handleError(record)

    def close(self) -> None:
        with self._lock:
            self._close_stream()
        super().close()


_FILE_HANDLER: DailyDateFileHandler | None = None


def setup_logging(*, level: str = "INFO", log_dir: str | Path | None = LOG_DIR) -> None:
    """Attach a stdout handler and, when `log_dir` is set, a daily file handler.

    Safe to call more than once.
    """

    global _FILE_HANDLER

    lvl = _safe_level(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger()
    root.setLevel(lvl)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setLevel(lvl)
        sh.setFormatter(formatter)
        root.addHandler(sh)

    if log_dir:
        if _FILE_HANDLER is None:
            fh = DailyDateFileHandler(base_dir=Path(log_dir), level=lvl)
            fh.setFormatter(formatter)
            root.addHandler(fh)
            _FILE_HANDLER = fh
        else:
            _FILE_HANDLER.setLevel(lvl)
            _FILE_HANDLER.setFormatter(formatter)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "apscheduler"):
        logging.getLogger(name).propagate = True


def apply_log_level(level: str) -> None:
    """Update log levels at runtime."""
    lvl = _safe_level(level)
    logging.getLogger().setLevel(lvl)
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(lvl)
    if _FILE_HANDLER is not None:
        _FILE_HANDLER.setLevel(lvl)


_LOGFILE_RE = re.compile(rf"^{re.escape(LOG_PREFIX)}-(\d{{4}}-\d{{2}}-\d{{2}})\.log$")


def list_log_files(*, log_dir: Path = LOG_DIR) -> list[Path]:
    """Return log files in newest-first order."""
    d = Path(log_dir)
    if not d.is_dir():
        return []
    files = [p for p in d.iterdir() if p.is_file() and _LOGFILE_RE.match(p.name)]
    return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)


def purge_old_logs(*, retention_days: int, log_dir: Path = LOG_DIR, now: datetime | None = None) -> int:
    """Delete log files whose mtime is older than `retention_days`."""
    days = int(retention_days or 0)
    if days <= 0:
        return 0

    n = now or datetime.now(timezone.utc).replace(tzinfo=None)
    cutoff = n - timedelta(days=days)

    deleted = 0
    for p in list_log_files(log_dir=Path(log_dir)):
        try:
            mtime = datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc).replace(tzinfo=None)
            if mtime < cutoff:
                p.unlink(missing_ok=True)
                deleted += 1
        except OSError:
            logging.getLogger("taskcadence").warning("Could not purge log file %s", p)
    return deleted

import json, logging, sys, threading, time
from pathlib import Path
from typing import Any, Dict, Optional

_RESERVED = (
    "msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
    "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
    "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
    "taskName", "name",
)

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k not in _RESERVED:
                try:
                    json.dumps({k: v})
                    payload[k] = v
                except (TypeError, ValueError):
                    payload[k] = str(v)
        return json.dumps(payload)

def get_logger(name: str = "dut") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger

def configure_file_logger(role: str, logger: Optional[logging.Logger] = None,
                          log_dir: str = "logs") -> Path:
    """Mirror ``logger`` records into ``<log_dir>/<role>-<utc stamp>.log`` and return the path."""
    logger = logger or get_logger()
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    log_path = path / f"{role}-{time.strftime('%Y%m%d-%H%M%S', time.gmtime())}.log"
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return log_path

# Very small metrics hook (no deps); worker threads update it concurrently
class Counter:
    def __init__(self):
        self.value = 0
        self._lock = threading.Lock()
    def inc(self, n: int = 1):
        with self._lock:
            self.value += n

class Gauge:
    def __init__(self): self.value = 0
    def set(self, v: float): self.value = v

class Metrics:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self._lock = threading.Lock()
    def counter(self, name: str) -> Counter:
        with self._lock:
            return self.counters.setdefault(name, Counter())
    def gauge(self, name: str) -> Gauge:
        with self._lock:
            return self.gauges.setdefault(name, Gauge())
    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": {k: c.value for k, c in sorted(self.counters.items())},
                "gauges": {k: g.value for k, g in sorted(self.gauges.items())},
            }

METRICS = Metrics()

from dataclasses import dataclass
from functools import lru_cache
import os


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    verbose: bool
    index_path: str
    worker_java_bin: str
    worker_jar: str
    worker_port: int
    worker_start_grace_seconds: float
    worker_stop_timeout_seconds: float
    worker_idle_timeout_seconds: float
    worker_http_timeout_seconds: float
    worker_eager_start: bool

    @property
    def worker_base_url(self) -> str:
        return f"http://localhost:{self.worker_port}"


@lru_cache
def get_settings() -> Settings:
    return Settings(
        host=os.getenv("GATEWAY_HOST", "0.0.0.0"),
        port=_to_int(os.getenv("GATEWAY_PORT"), default=9997, minimum=1),
        verbose=_to_bool(os.getenv("GATEWAY_VERBOSE"), default=False),
        index_path=os.getenv("GATEWAY_INDEX_PATH", "/data/index"),
        worker_java_bin=os.getenv("WORKER_JAVA_BIN", "/usr/bin/java"),
        worker_jar=os.getenv("WORKER_JAR", "/usr/local/share/java/tika-server.jar"),
        worker_port=_to_int(os.getenv("WORKER_PORT"), default=9998, minimum=1),
        worker_start_grace_seconds=_to_float(
            os.getenv("WORKER_START_GRACE_SECONDS"), default=0.1, minimum=0.0
        ),
        worker_stop_timeout_seconds=_to_float(
            os.getenv("WORKER_STOP_TIMEOUT_SECONDS"), default=5.0, minimum=0.1
        ),
        worker_idle_timeout_seconds=_to_float(
            os.getenv("WORKER_IDLE_TIMEOUT_SECONDS"), default=0.0, minimum=0.0
        ),
        worker_http_timeout_seconds=_to_float(
            os.getenv("WORKER_HTTP_TIMEOUT_SECONDS"), default=120.0, minimum=1.0
        ),
        worker_eager_start=_to_bool(os.getenv("WORKER_EAGER_START"), default=False),
    )

from collections.abc import Mapping
from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


_TRUTHY = {"1", "true", "yes", "on"}


def _as_flag(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _env_flag(name: str, default: str) -> bool:
    return _as_flag(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    app_name: str
    log_level: str
    input_dir: str
    output_dir: str
    stop_on_error: bool
    maintain_pairing: bool
    log_errors: bool
    max_concurrency: int
    retry_attempts: int
    retry_backoff_seconds: float
    sample_error_limit: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "pairflow"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        input_dir=os.getenv("INPUT_DIR", "./data/input"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        stop_on_error=_env_flag("STOP_ON_ERROR", "false"),
        maintain_pairing=_env_flag("MAINTAIN_PAIRING", "true"),
        log_errors=_env_flag("LOG_ERRORS", "true"),
        max_concurrency=int(os.getenv("MAX_CONCURRENCY", "1")),
        retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "0")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0")),
        sample_error_limit=int(os.getenv("SAMPLE_ERROR_LIMIT", "5")),
    )


# Option names as workflow scripts spell them.
_OPTION_ALIASES = {
    "stopOnError": "stop_on_error",
    "maintainPairing": "maintain_pairing",
    "logErrors": "log_errors",
    "maxConcurrency": "concurrency",
    "max_concurrency": "concurrency",
    "sampleErrorLimit": "sample_error_limit",
}


@dataclass(frozen=True)
class BatchConfig:
    stop_on_error: bool = False
    maintain_pairing: bool = True
    log_errors: bool = True
    concurrency: int = 1
    sample_error_limit: int = 5

    def __post_init__(self) -> None:
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int):
            raise TypeError("concurrency must be an integer")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.sample_error_limit < 0:
            raise ValueError("sample_error_limit must not be negative")

    @classmethod
    def from_options(cls, options: Mapping[str, object] | None = None) -> "BatchConfig":
        """Build a config from loosely typed workflow options.

        Keys may be snake_case or camelCase. Unrecognized keys are ignored so
        scripts written against newer option sets keep working.
        """
        values: dict[str, object] = {}
        for key, value in (options or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name in {"stop_on_error", "maintain_pairing", "log_errors"}:
                values[name] = _as_flag(value)
            elif name in {"concurrency", "sample_error_limit"}:
                values[name] = int(value)  # type: ignore[call-overload]
        return cls(**values)  # type: ignore[arg-type]

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchConfig":
        return cls(
            stop_on_error=settings.stop_on_error,
            maintain_pairing=settings.maintain_pairing,
            log_errors=settings.log_errors,
            concurrency=settings.max_concurrency,
            sample_error_limit=settings.sample_error_limit,
        )

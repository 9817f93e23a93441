import os


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.qwen_base_url: str = os.environ.get("QWEN_BASE_URL", "https://chat.qwenlm.ai").rstrip("/")
        self.debug: bool = _env_flag("DEBUG_PROXY", "")
        # Enable HTTP/2 to improve latency and throughput when supported by upstream.
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")
        try:
            self.max_retries: int = max(1, int(os.environ.get("QWEN_MAX_RETRIES", "3")))
        except Exception:
            self.max_retries = 3
        # Linear backoff unit; attempt N sleeps N * retry_delay seconds
        try:
            self.retry_delay: float = max(0.0, float(os.environ.get("QWEN_RETRY_DELAY_MS", "1000")) / 1000.0)
        except Exception:
            self.retry_delay = 1.0
        # Deadline for a whole streamed response (observed upstream variants need 60s-600s)
        try:
            self.stream_timeout: float = max(1.0, float(os.environ.get("STREAM_TIMEOUT", "60")))
        except Exception:
            self.stream_timeout = 60.0
        try:
            self.models_cache_ttl: float = max(0.0, float(os.environ.get("MODELS_CACHE_TTL", "3600")))
        except Exception:
            self.models_cache_ttl = 3600.0
        try:
            self.upstream_timeout: float = max(1.0, float(os.environ.get("UPSTREAM_TIMEOUT", "120")))
        except Exception:
            self.upstream_timeout = 120.0
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "8000"))
        except Exception:
            self.port = 8000

    @property
    def chat_completions_url(self) -> str:
        return f"{self.qwen_base_url}/api/chat/completions"

    @property
    def models_url(self) -> str:
        return f"{self.qwen_base_url}/api/models"

    @property
    def files_url(self) -> str:
        return f"{self.qwen_base_url}/api/v1/files/"

    def redact(self, headers: dict) -> dict:
        return {
            k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v)
            for k, v in headers.items()
        }


settings = Settings()


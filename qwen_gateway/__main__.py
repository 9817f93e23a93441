import uvicorn

from .config import settings


def main() -> None:
    uvicorn.run("qwen_gateway.main:app", host=settings.host, port=settings.port, log_level="debug" if settings.debug else "info")


if __name__ == "__main__":
    main()

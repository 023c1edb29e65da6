import uvicorn

from smartpick_api.core.settings import settings


def main() -> None:
    uvicorn.run(
        "smartpick_api.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

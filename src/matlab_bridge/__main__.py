import uvicorn

from matlab_bridge.server import app
from matlab_bridge.settings import settings


def main() -> None:
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

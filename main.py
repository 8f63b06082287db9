from chatrelay.logging_config import setup_logging
from chatrelay.routes import create_app
from chatrelay.settings import settings

setup_logging()

# ASGI entrypoint: `uvicorn main:app`.
app = create_app()


def run() -> None:
    import uvicorn

    # log_config=None keeps uvicorn on the handlers installed by setup_logging().
    uvicorn.run(
        "main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.server_reload,
        log_config=None,
    )


if __name__ == "__main__":
    run()

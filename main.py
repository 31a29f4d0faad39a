from ztoapi.logging_config import setup_logging
from ztoapi.routes import create_app
from ztoapi.settings import settings

setup_logging(settings)

# `uvicorn main:app` entry point; settings come from the environment.
app = create_app(settings)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        log_config=None,  # handlers come from setup_logging()
        proxy_headers=True,
    )


if __name__ == "__main__":
    run()

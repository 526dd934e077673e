import uvicorn

from finance_tracker.app import create_app
from finance_tracker.logger import get_logging_config

app = create_app()


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=get_logging_config())


if __name__ == "__main__":
    run()

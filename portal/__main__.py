import uvicorn

from portal import config
from portal.server import app


if __name__ == "__main__":
    config.configure_logging()
    uvicorn.run(app, host=config.LISTEN_HOST, port=config.LISTEN_PORT)

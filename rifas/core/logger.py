import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_ready = False


def _setup():
    global _ready
    if _ready:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers = [logging.StreamHandler()]
    log_file = os.getenv("LOG_FILE", "")
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
    # uvicorn trae sus propios handlers; solo se alinea el nivel
    logging.getLogger("uvicorn").setLevel(level)
    _ready = True


def get_logger(name=None) -> logging.Logger:
    _setup()
    return logging.getLogger(name)

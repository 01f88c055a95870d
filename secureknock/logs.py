import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(path: Optional[str] = None, debug: bool = False) -> None:
    """Console logging, plus a log file when ``path`` is set."""
    handlers = [logging.StreamHandler()]
    if path:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
    )
    # scapy is chatty on import
    logging.getLogger("scapy.runtime").setLevel(logging.ERROR)

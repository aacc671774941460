import logging
import sys
from typing import Union


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("oodoo")
    if logger.handlers:
        return logger  # already configured
    logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    fmt = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(fmt)
    logger.addHandler(handler)
    # driver chatter only matters when debugging the store
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    return logger

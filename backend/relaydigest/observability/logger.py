import logging
from typing import Union
from pythonjsonlogger import jsonlogger

SERVICE_NAME = "relaydigest"

def setup_json_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    One JSON line per record on stderr. Workflow modules log ids as
    %-args in the message; `service` is stamped on every line so the
    stream can be merged with the dispatcher's own logs.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(filename)s %(lineno)d",
        static_fields={"service": SERVICE_NAME},
    ))
    root.addHandler(handler)

    # per-request lines from the HTTP client drown out the workflow log
    logging.getLogger("httpx").setLevel(logging.WARNING)

import logging


def configure_logging(level=logging.INFO) -> logging.Logger:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=level,
    )
    # httpx logs every Bot API request at INFO, which includes the token in the URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("chatwarden")

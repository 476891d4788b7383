import coloredlogs, logging
import logging.handlers
import sys

LOGGER_NAME = "logger"
NOTICE = 25

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "NOTICE": NOTICE,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_terse = False


def get_logger():
    return logging.getLogger(LOGGER_NAME)


def parse_log_level(level_name):
    """Returns the numeric level for a level name or None if the name is not known."""
    if level_name is None:
        return None
    return LOG_LEVELS.get(level_name.strip().upper())


def init_logging(level="INFO", log_file=None, log_to_file=False, terse=False, verbose=False):
    """Set up settings of logging - level, format, filename, etc."""
    global _terse
    _terse = terse

    logging.addLevelName(NOTICE, "NOTICE")
    numeric_level = logging.DEBUG if verbose else (parse_log_level(level) or logging.INFO)

    log_fmt = "%(asctime)s %(levelname)s: %(message)s"
    logger = get_logger()
    logger.setLevel(numeric_level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if log_file and log_to_file:
        add_file_handler(logger, log_file, log_fmt, numeric_level)
        return logger

    level_styles = dict(coloredlogs.DEFAULT_LEVEL_STYLES)
    level_styles['debug'] = {'color': ''}
    level_styles['notice'] = {'color': 'cyan'}
    coloredlogs.install(level=numeric_level, fmt=log_fmt, level_styles=level_styles,
                        logger=logger, stream=sys.stderr)

    if log_file:
        add_file_handler(logger, log_file, log_fmt, numeric_level)

    return logger


def add_file_handler(logger, log_file, log_fmt, level):
    log_handler = logging.handlers.RotatingFileHandler(filename=log_file, mode="a", maxBytes=104857600, backupCount=10)
    log_handler.setFormatter(logging.Formatter(log_fmt))
    log_handler.setLevel(level)
    logger.addHandler(log_handler)


def shutdown_logging():
    logger = get_logger()
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


def is_terse():
    return _terse


def notice(message):
    get_logger().log(NOTICE, message)


def log_detail(message, level=logging.INFO):
    get_logger().log(level, f"DETAIL: {message}")


def log_hint(message, level=logging.INFO):
    if not _terse:
        get_logger().log(level, f"HINT: {message}")


def log_error(error):
    """Logs a ClusterManagerError as an error line with optional detail and hint lines."""
    logger = get_logger()
    logger.error(error.message)
    if error.detail:
        log_detail(error.detail, logging.ERROR)
    if error.hint:
        log_hint(error.hint, logging.ERROR)

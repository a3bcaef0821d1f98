import logging
import sys
from logging.handlers import RotatingFileHandler

from rich.logging import RichHandler


class _RichFormatter(logging.Formatter):
    """Formatter that highlights the patchmvs package name with Rich markup."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        original_name = record.name
        try:
            if original_name.startswith("patchmvs"):
                parts = original_name.split(".")
                parts[0] = "[bold magenta]" + parts[0] + "[/]"
                record.name = ".".join(parts)
            return super().format(record)
        finally:
            record.name = original_name


logger = logging.getLogger("patchmvs")
logger.propagate = False
logger.addHandler(logging.NullHandler())


def configure_logger(
    level=logging.INFO,
    log_format="%(name)s - %(module)s:%(lineno)d - %(message)s",
    date_format="%Y-%m-%d %H:%M:%S",
    file_path=None,
    file_max_bytes=10485760,  # 10MB
    file_backup_count=3,
    stream=sys.stderr,
    propagate=False,
    use_rich: bool = True,
):
    """
    Configure the package logger.

    Only the ``patchmvs`` logger is touched; the root logger and other
    libraries keep whatever configuration the host application set up.
    Console output goes through Rich unless ``use_rich`` is False, file
    output (when ``file_path`` is given) through a rotating plain-text handler.
    """
    for handler in logger.handlers[:]:
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    logger.propagate = propagate
    logger.setLevel(level)

    console_formatter = _RichFormatter(log_format) if use_rich else logging.Formatter(log_format)
    file_formatter = logging.Formatter(
        f"%(asctime)s - %(levelname)s - {log_format}", date_format
    )

    if stream:
        if use_rich:
            console_handler = RichHandler(
                show_time=True,
                show_level=True,
                show_path=False,
                rich_tracebacks=True,
                markup=True,
                log_time_format=date_format,
            )
        else:
            console_handler = logging.StreamHandler(stream)
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    if file_path:
        file_handler = RotatingFileHandler(
            file_path, maxBytes=file_max_bytes, backupCount=file_backup_count
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger

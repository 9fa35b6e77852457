import gzip
import logging
import os
import shutil
import time
from logging.handlers import TimedRotatingFileHandler

from fastapi import Request

from . import config

LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def compress_old_log(source_path: str):
    if os.path.exists(source_path):
        compressed_path = f"{source_path}.gz"
        with open(source_path, "rb") as f_in, gzip.open(compressed_path, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        os.remove(source_path)


def build_file_handler(log_file: str = config.LOG_FILE) -> TimedRotatingFileHandler:
    """
    Rotating file handler.
    Rotation:
      - Weekly (every Monday at midnight)
      - Max file size: 20 MB
      - Automatically compresses old logs
    """
    handler = TimedRotatingFileHandler(
        log_file,
        when="W0",             # Rotate weekly (Monday)
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
        delay=True,
    )

    old_emit = handler.emit

    def emit_with_size_check(record):
        if os.path.exists(log_file) and os.path.getsize(log_file) >= LOG_MAX_SIZE:
            handler.doRollover()
        old_emit(record)

    handler.emit = emit_with_size_check

    old_doRollover = handler.doRollover
    log_dir = os.path.dirname(log_file) or "."
    log_name = os.path.basename(log_file)

    def doRollover_and_compress():
        old_doRollover()
        # Compress previous log files
        for file in os.listdir(log_dir):
            if file.startswith(log_name) and file != log_name and not file.endswith(".gz"):
                file_path = os.path.join(log_dir, file)
                if os.path.isfile(file_path):
                    compress_old_log(file_path)

    handler.doRollover = doRollover_and_compress
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logger(log_file: str = config.LOG_FILE, level: str = config.LOG_LEVEL) -> logging.Logger:
    """Attach the rotating file handler and a console handler to the package logger."""
    logger = logging.getLogger("faceattend")
    logger.setLevel(level)

    if not any(getattr(h, "_faceattend", False) for h in logger.handlers):
        for handler in (build_file_handler(log_file), logging.StreamHandler()):
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            handler._faceattend = True
            logger.addHandler(handler)
    return logger


def create_logging_middleware(app, logger: logging.Logger):
    """
    Adds a middleware to log request method, path, status and response time.
    Bodies are never logged: they carry face captures and bearer tokens.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            "IP=%s | %s %s | Status=%s | Time=%.4fs",
            client_ip, request.method, request.url.path, response.status_code, process_time,
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app

import os
import logging
from logging.handlers import RotatingFileHandler

LOG_DIR   = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

def get_logger(name: str = "scale_gateway", log_dir: str = LOG_DIR, log_file: str = "gateway.log") -> logging.Logger:
    """
    Crea (o reutiliza) un logger con rotación de archivos y salida a consola.
    Evita duplicar handlers si se llama múltiples veces.
    """
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger  # ya configurado

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, log_file),
        maxBytes=1_000_000,
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger

"""Configuración centralizada de logging."""
import sys
from loguru import logger
from pricewatch.config.settings import LOG_DIR, LOG_LEVEL

# Remover handler por defecto
logger.remove()

# Console handler con colores
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
    level=LOG_LEVEL,
    colorize=True
)

# File handler con rotación
logger.add(
    LOG_DIR / "pricewatch_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",  # Nuevo archivo cada día
    retention="30 days",
    compression="zip",
    enqueue=True  # Thread-safe
)

# Error handler separado
logger.add(
    LOG_DIR / "errors_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} - {message}",
    level="ERROR",
    rotation="00:00",
    retention="90 days",
    compression="zip",
    backtrace=True,
    diagnose=True
)

logger.configure(extra={"name": "pricewatch"})


def get_logger(name: str):
    """Obtener logger con contexto específico."""
    return logger.bind(name=name)

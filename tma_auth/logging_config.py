import logging
import sys

NOISY_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "httpx": logging.WARNING,
    "telegram": logging.INFO,
    "telegram.ext": logging.INFO,
}


def setup_logging(level: str = "INFO") -> None:
    """Route all logging to stdout with one formatter."""
    numeric = getattr(logging, level.upper(), logging.INFO)

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s"))
    logging.basicConfig(level=numeric, handlers=[handler])

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, numeric))

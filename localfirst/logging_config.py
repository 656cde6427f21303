import logging
import os
from typing import Optional

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configura o logging do processo.
    Sem argumento, usa LOCALFIRST_LOG_LEVEL (arquivo .env ou ambiente), padrão INFO.
    """
    load_dotenv()
    level_name = (level or os.getenv("LOCALFIRST_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)

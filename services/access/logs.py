# ============================================================
# logs.py - Configuration des journaux du service Access
# ------------------------------------------------------------
# Un logger nommé par module ("gym_access.<module>") ; le
# handler console est installé une seule fois au démarrage.
# ============================================================
import logging
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"gym_access.{name}")


def setup_logging():
    root = logging.getLogger("gym_access")
    root.setLevel(LOG_LEVEL)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    return root

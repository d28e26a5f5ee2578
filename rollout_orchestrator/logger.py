import logging

ROOT = "rollout_orchestrator"


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')


def get_logger(name=None):
    if not name:
        return logging.getLogger(ROOT)
    return logging.getLogger(f"{ROOT}.{name}")

import logging

ROOT = "fleet_rollout"
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(level="INFO", stream=None):
    """Send fleet_rollout logs to stderr (or stream) at the given level"""
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=stream)
    logging.getLogger(ROOT).setLevel(numeric)


def get_logger(component=None):
    """Logger for one component, e.g. get_logger("executor") -> fleet_rollout.executor"""
    if not component or component == ROOT:
        return logging.getLogger(ROOT)
    return logging.getLogger(f"{ROOT}.{component}")
